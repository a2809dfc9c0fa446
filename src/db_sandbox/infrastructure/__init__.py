"""Infrastructure - config, wiring and observability."""
