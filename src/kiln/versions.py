"""Version ordering, version constraints and pin-expression helpers.

Versions are dotted strings. Each segment is compared numerically on its leading
digits and then on any trailing tag, where a tagged segment (``0rc1``) sorts
before the untagged release segment (``0``). Missing segments compare as ``0``.

Constraints follow the match-spec spelling used in requirement strings:
``>=1.2,<2`` (``,`` is AND), ``1.2|1.4`` (``|`` is OR), ``1.2.*`` (prefix), and a
bare ``1.2`` which is shorthand for ``1.2.*``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import total_ordering

from kiln.errors import RenderError

_OPERATORS = ("==", "!=", ">=", "<=", "~=", ">", "<", "=")
_PIN_PATTERN = re.compile(r"^x(\.x)*$")


def _split_segment(segment: str) -> tuple[str, str]:
    """Split ``1rc2`` into ``("1", "rc2")``."""
    tag = segment.lstrip("0123456789")
    return segment[: len(segment) - len(tag)], tag


def _segment_key(segment: str) -> tuple[int, int, str]:
    digits, tag = _split_segment(segment)
    number = int(digits) if digits else 0
    # untagged release segments sort after tagged pre-release ones
    return (number, 0 if tag else 1, tag.lower())


@total_ordering
@dataclass(frozen=True, slots=True)
class Version:
    raw: str

    @property
    def segments(self) -> tuple[str, ...]:
        return tuple(part for part in re.split(r"[._-]", self.raw.strip()) if part)

    def _key(self, width: int) -> tuple[tuple[int, int, str], ...]:
        keys = [_segment_key(segment) for segment in self.segments]
        keys.extend([(0, 1, "")] * (width - len(keys)))
        return tuple(keys)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        width = max(len(self.segments), len(other.segments))
        return self._key(width) == other._key(width)

    def __lt__(self, other: Version) -> bool:
        width = max(len(self.segments), len(other.segments))
        return self._key(width) < other._key(width)

    def __hash__(self) -> int:
        keys = list(self._key(len(self.segments)))
        while keys and keys[-1] == (0, 1, ""):
            keys.pop()
        return hash(tuple(keys))

    def __str__(self) -> str:
        return self.raw

    def startswith(self, prefix: Version) -> bool:
        own = self.segments
        wanted = prefix.segments
        if len(wanted) > len(own):
            return False
        return all(
            _segment_key(a) == _segment_key(b) for a, b in zip(own, wanted, strict=False)
        )

    def truncate(self, count: int) -> Version:
        return Version(".".join(self.segments[:count]))

    def bump(self, count: int) -> Version:
        """Keep ``count`` segments and increment the last numeric one."""
        kept = list(self.segments[:count])
        while len(kept) < count:
            kept.append("0")
        digits, _ = _split_segment(kept[-1])
        kept[-1] = str((int(digits) if digits else 0) + 1)
        return Version(".".join(kept))


def version_matches(version: str, spec: str) -> bool:
    """Return True if ``version`` satisfies the constraint ``spec``."""
    spec = spec.strip()
    if not spec or spec == "*":
        return True
    candidate = Version(version)
    return any(
        all(_match_single(candidate, clause.strip()) for clause in alternative.split(","))
        for alternative in spec.split("|")
    )


def _match_single(candidate: Version, clause: str) -> bool:
    if not clause or clause == "*":
        return True
    for operator in _OPERATORS:
        if clause.startswith(operator):
            target = clause[len(operator) :].strip()
            break
    else:
        operator, target = "", clause

    if target.endswith(".*") or target.endswith("*"):
        prefix = Version(target.rstrip("*").rstrip("."))
        if operator in ("", "==", "="):
            return candidate.startswith(prefix)
        if operator == "!=":
            return not candidate.startswith(prefix)
        target = str(prefix)

    expected = Version(target)
    if operator == "":
        return candidate.startswith(expected)
    if operator in ("==", "="):
        return candidate == expected
    if operator == "!=":
        return candidate != expected
    if operator == ">=":
        return candidate >= expected
    if operator == "<=":
        return candidate <= expected
    if operator == ">":
        return candidate > expected
    if operator == "<":
        return candidate < expected
    # ~=: at least ``expected`` and sharing all but its last segment
    width = max(len(expected.segments) - 1, 1)
    return candidate >= expected and candidate.startswith(expected.truncate(width))


def pin_width(expression: str, *, argument: str) -> int:
    """Translate a pin expression such as ``x.x`` into a segment count."""
    if not _PIN_PATTERN.match(expression):
        raise RenderError(
            f"Invalid pin expression `{expression}`.",
            hint="Pin expressions look like `x`, `x.x` or `x.x.x`.",
            context={"argument": argument, "expression": expression},
        )
    return expression.count("x")


def apply_pin(
    version: str,
    *,
    min_pin: str | None = "x.x.x.x.x.x",
    max_pin: str | None = "x",
    exact: bool = False,
    build_string: str | None = None,
) -> str:
    """Turn a concrete version into a constraint string.

    ``apply_pin("1.2.3", max_pin="x.x")`` returns ``>=1.2.3,<1.3``.
    """
    if exact:
        if build_string:
            return f"=={version} {build_string}"
        return f"=={version}"

    resolved = Version(version)
    clauses: list[str] = []
    if min_pin is not None:
        clauses.append(f">={resolved.truncate(pin_width(min_pin, argument='min_pin'))}")
    if max_pin is not None:
        clauses.append(f"<{resolved.bump(pin_width(max_pin, argument='max_pin'))}")
    return ",".join(clauses)


def version_to_buildstring(version: str) -> str:
    """``3.10.4`` -> ``310``; used for ``py310``-style build string prefixes."""
    return "".join(Version(version).segments[:2])


def is_constraint(value: str) -> bool:
    """True when ``value`` already carries operators or wildcards."""
    value = value.strip()
    return (
        any(value.startswith(op) for op in _OPERATORS)
        or "*" in value
        or "," in value
        or "|" in value
    )


__all__ = [
    "Version",
    "apply_pin",
    "is_constraint",
    "pin_width",
    "version_matches",
    "version_to_buildstring",
]
