"""Filesystem protocol: data model and atomic persistence helpers."""
