"""Context engine services."""
