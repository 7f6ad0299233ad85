"""remi: a local, searchable memory of coding-assistant sessions."""

__version__ = "0.1.0"
