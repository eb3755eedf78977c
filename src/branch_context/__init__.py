"""Branch Context - budgeted context assembly for branching conversations."""

__version__ = "1.0.0"
