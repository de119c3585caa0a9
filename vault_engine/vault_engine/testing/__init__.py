"""Test doubles for running the orchestration code without containers."""

from vault_engine.testing.fakes import FakeStackRunner

__all__ = ["FakeStackRunner"]
