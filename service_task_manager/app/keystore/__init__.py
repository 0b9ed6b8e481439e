"""
Key-value store package.

Wraps the Redis client so every caller sees the same failure contract:
soft reads return a StoreResult, writes raise typed store errors.
"""

from .store import ABSENT, NO_EXPIRY, KeyStore, NullKeyStore, StoreResult, build_keystore

__all__ = [
    "ABSENT",
    "NO_EXPIRY",
    "KeyStore",
    "NullKeyStore",
    "StoreResult",
    "build_keystore",
]
