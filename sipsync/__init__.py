"""SipSync: drink log replicated between a phone and a watch."""

__version__ = "0.1.0"
