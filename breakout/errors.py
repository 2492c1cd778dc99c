from __future__ import annotations


class StateFormatError(ValueError):
    """Raised when a state snapshot is missing required fields or has bad types."""


class StateStoreError(Exception):
    """Raised by the state store client when a request cannot be completed."""
