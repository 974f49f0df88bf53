"""JSON dashboard for one SipSync device.

Serves derived statistics, the entry list and sync status over FastAPI,
and lets a client log drinks through the same rate-limited path as the
command line.
"""

from .app import create_app

__all__ = ["create_app"]
