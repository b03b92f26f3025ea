"""Configuration models and loaders for ldhdns."""
