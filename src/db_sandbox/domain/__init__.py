"""Domain layer - entities, value objects and services."""
