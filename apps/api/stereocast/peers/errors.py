"""Error types raised by peer sessions and media collaborators."""
from __future__ import annotations


class NegotiationError(RuntimeError):
    """Raised when a description or candidate cannot be produced or applied."""


class MediaCapabilityError(RuntimeError):
    """Raised when the local environment cannot produce or consume media."""
