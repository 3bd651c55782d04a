"""Shared test helpers for the paraimprove test suite."""

from __future__ import annotations

from tests.helpers.fakes import (
    FakeCoverage,
    FakeDiagnoser,
    FakeMainline,
    FakeRun,
    FakeRunner,
    FakeWorkspaces,
    make_area,
    make_daemon,
)

__all__ = [
    "FakeCoverage",
    "FakeDiagnoser",
    "FakeMainline",
    "FakeRun",
    "FakeRunner",
    "FakeWorkspaces",
    "make_area",
    "make_daemon",
]
