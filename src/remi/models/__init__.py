"""Data models: canonical dataclasses and ORM rows."""
