"""Script runners and build environment resolvers."""

from .base import EnvironmentResolver, ScriptResult, ScriptRunner
from .environment import PrefixEnvironmentResolver
from .local import LocalScriptRunner

__all__ = [
    "EnvironmentResolver",
    "LocalScriptRunner",
    "PrefixEnvironmentResolver",
    "ScriptResult",
    "ScriptRunner",
]
