"""Shared utilities: error taxonomy and invariant checks."""
