"""
Error taxonomy for the Kori sync service.

Only ``ValidationError`` ever reaches a connected client as a structured
error; the others are handled where they occur and degrade silently.
"""


class KoriSyncError(Exception):
    """Base class for all service errors."""


class ValidationError(KoriSyncError):
    """A client-supplied value violates a closed-set constraint."""


class TransportError(KoriSyncError):
    """A malformed inbound message or a failed send."""


class IntegrationError(KoriSyncError):
    """An external collaborator (tips, playback, mood detection) failed."""


class StoreError(KoriSyncError):
    """The backing store is unavailable or failed an operation."""
