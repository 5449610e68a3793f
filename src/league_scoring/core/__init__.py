"""Core business logic — normalizer, formulas, bonuses, scarcity and team aggregation.

This module is framework-agnostic. It has no dependency on a database,
MCP or any server framework; the pipeline and the tool surface import
from here.
"""
