"""Error taxonomy for scene construction, lifecycle and tracing.

Every error surfaces synchronously at the call that triggers it. The
classes also inherit from the closest built-in exception so callers that
only know ``ValueError`` / ``RuntimeError`` still catch them.
"""

from __future__ import annotations


class HeliotraceError(Exception):
    """Base class for all scene and tracing errors."""


class ConfigurationError(HeliotraceError, ValueError):
    """An element or scene is missing required configuration.

    Raised for a missing surface/aperture at ``initialize()``, invalid
    shape or optical parameters, and duplicate element registration.
    """


class DegenerateDirection(HeliotraceError, ValueError):
    """A direction vector cannot be formed (e.g. origin == aim point)."""


class InvalidScene(HeliotraceError):
    """The scene has no elements or no receiver-flagged element."""


class NotInitialized(HeliotraceError, RuntimeError):
    """A lifecycle operation was called out of order."""


class EngineError(HeliotraceError, RuntimeError):
    """The tracing engine failed. Never retried."""
