"""Public package entrypoint for the kiln package build engine."""

from .config import ToolConfiguration
from .engine import Kiln, KilnResult, RenderedVariant, VariantResult
from .errors import (
    BuildError,
    ConfigError,
    ErrorCode,
    KilnError,
    PackagingError,
    RecipeError,
    RenderError,
    SourceError,
)
from .observability import StructuredLogger
from .platforms import Platform
from .recipe import Recipe, load_recipe
from .render import BuildPlan, OutputPlan, render
from .variants import VariantAssignment, VariantConfig, expand, load_variant_config

__all__ = [
    "BuildError",
    "BuildPlan",
    "ConfigError",
    "ErrorCode",
    "Kiln",
    "KilnError",
    "KilnResult",
    "OutputPlan",
    "PackagingError",
    "Platform",
    "Recipe",
    "RecipeError",
    "RenderError",
    "RenderedVariant",
    "SourceError",
    "StructuredLogger",
    "ToolConfiguration",
    "VariantAssignment",
    "VariantConfig",
    "VariantResult",
    "expand",
    "load_recipe",
    "load_variant_config",
    "render",
]
