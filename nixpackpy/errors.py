from __future__ import annotations


class NixpackpyError(Exception):
    """Base class for errors reported back to a client."""


class ValidationError(NixpackpyError):
    """A required field is missing or malformed. No state was changed."""


class NotFoundError(NixpackpyError):
    """The referenced file or session does not exist."""


class SandboxError(NixpackpyError):
    """Spawning, writing to or killing a sandbox process failed."""


class TransportError(NixpackpyError):
    """Sending to a client failed (usually because it already went away)."""
