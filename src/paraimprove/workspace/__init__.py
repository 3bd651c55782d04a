"""Per-agent git workspaces."""
