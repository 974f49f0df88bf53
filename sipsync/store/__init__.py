"""Local persistence for one device: replica, cooldown and cached peer flags."""

from .capabilities import CapabilityCache
from .kv_store import KeyValueStore
from .log_store import LocalLogStore
from .rate_limiter import RATE_LIMIT_MESSAGE, AdmissionDecision, RateLimiter

__all__ = [
    "AdmissionDecision",
    "CapabilityCache",
    "KeyValueStore",
    "LocalLogStore",
    "RATE_LIMIT_MESSAGE",
    "RateLimiter",
]
