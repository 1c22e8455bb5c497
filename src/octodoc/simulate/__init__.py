"""Deterministic replay tooling."""
