"""Scheduling, supervision, merge arbitration and round control."""
