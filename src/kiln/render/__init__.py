"""Selector/template evaluation and recipe rendering."""

from .engine import render
from .plan import BuildPlan, Dependency, DynamicLinking, OutputPlan, Requirements
from .used_variables import UsedVariablesSet, find_used_variables

__all__ = [
    "BuildPlan",
    "Dependency",
    "DynamicLinking",
    "OutputPlan",
    "Requirements",
    "UsedVariablesSet",
    "find_used_variables",
    "render",
]
