"""Default implementations of the external collaborator boundaries."""
