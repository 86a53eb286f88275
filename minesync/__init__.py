"""
minesync - Mining account dashboard backend.

Keeps per-account mining records in sync between an on-device store and a
shared remote store, and derives each account's session status from the
records' timestamp fields. Includes SQLite storage, the reconciler, the status
resolver, a probe client for the mining service, and a REST API.
"""

__version__ = "0.1.0"

__all__ = [
    "mining",
    "monitor",
    "probe",
    "reconciler",
    "records",
    "resolver",
    "scheduler",
    "server",
    "storage",
    "transfer",
]
