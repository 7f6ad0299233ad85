"""Canonical store: engine, sessions, repositories and integrity checks."""
