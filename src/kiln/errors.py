"""Typed engine error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across engine surfaces."""

    RECIPE = "E_RECIPE"
    CONFIG = "E_CONFIG"
    RENDER = "E_RENDER"
    SOURCE = "E_SOURCE"
    BUILD = "E_BUILD"
    PACKAGING = "E_PACKAGING"


class KilnError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: dict[str, str]

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code.value
        self.hint = hint
        self.context = dict(context or {})

    def __str__(self) -> str:
        parts = [f"{type(self).__name__}: {self.message}"]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "kind": type(self).__name__,
            "message": self.message,
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class RecipeError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RECIPE, hint=hint, context=context)


class ConfigError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.CONFIG, hint=hint, context=context)


class RenderError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.RENDER, hint=hint, context=context)


class SourceError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.SOURCE, hint=hint, context=context)


class BuildError(KilnError):
    """Build step failure; ``output`` holds the captured script output."""

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message, code=ErrorCode.BUILD, hint=hint, context=context)
        self.output = output


class PackagingError(KilnError):
    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message, code=ErrorCode.PACKAGING, hint=hint, context=context)


__all__ = [
    "BuildError",
    "ConfigError",
    "ErrorCode",
    "KilnError",
    "PackagingError",
    "RecipeError",
    "RenderError",
    "SourceError",
]
