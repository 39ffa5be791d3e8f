"""Domain layer: approval record model, codes, errors and services."""
