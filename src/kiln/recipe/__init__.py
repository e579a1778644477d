"""Recipe model and loader."""

from .model import (
    Conditional,
    Literal,
    MapNode,
    Node,
    OutputDef,
    Recipe,
    Sequence,
    Template,
)
from .parser import load_recipe, parse_recipe, recipe_from_mapping

__all__ = [
    "Conditional",
    "Literal",
    "MapNode",
    "Node",
    "OutputDef",
    "Recipe",
    "Sequence",
    "Template",
    "load_recipe",
    "parse_recipe",
    "recipe_from_mapping",
]
