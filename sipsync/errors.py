"""Exceptions raised inside the sync core.

None of these are fatal: each one is caught at the boundary that owns the
recovery (the log store, the coordinator) and logged.
"""


class SipSyncError(Exception):
    """Base class for sipsync errors."""


class StorageDecodeError(SipSyncError):
    """Stored replica bytes could not be decoded."""


class PayloadDecodeError(SipSyncError):
    """An inbound sync payload could not be decoded."""


class TransportUnavailableError(SipSyncError):
    """The peer device is not reachable right now."""
