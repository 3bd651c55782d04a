"""Coding-agent process adapters."""
