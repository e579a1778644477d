"""Variant configuration and matrix expansion."""

from .config import VariantConfig, load_variant_config
from .matrix import VariantAssignment, collapse, expand
from .pins import PackageVersionLookup, PinSpec, StaticVersionLookup, resolve_pin

__all__ = [
    "PackageVersionLookup",
    "PinSpec",
    "StaticVersionLookup",
    "VariantAssignment",
    "VariantConfig",
    "collapse",
    "expand",
    "load_variant_config",
    "resolve_pin",
]
