"""YAML configuration for the daemon."""
