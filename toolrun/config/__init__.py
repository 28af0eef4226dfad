"""Configuration models, loading and persisted rules."""
