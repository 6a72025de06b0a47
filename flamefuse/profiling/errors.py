"""
flamefuse Profiling Errors

Only contract violations surface as exceptions. Malformed telemetry,
missing sources, retrieval timeouts and id collisions are absorbed by the
engine and reported through structured log warnings instead.
"""

from __future__ import annotations


class FlameFuseError(Exception):
    """Base class for all flamefuse errors."""


class EmptyMergeError(FlameFuseError):
    """Raised when a merge is requested with no profiles to combine."""

    def __init__(self, message: str = "Cannot merge an empty list of profiles"):
        super().__init__(message)


class SessionStateError(FlameFuseError):
    """Raised when a session operation is called in the wrong lifecycle state."""

    def __init__(self, operation: str, state: str, expected: str):
        self.operation = operation
        self.state = state
        self.expected = expected
        super().__init__(
            f"Cannot {operation} while session is '{state}' (expected '{expected}')"
        )
