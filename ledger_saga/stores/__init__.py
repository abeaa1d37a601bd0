"""
Storage providers for ledger-saga.

Interfaces for the ledger, cache and media stores plus their concrete
implementations.
"""

from .base import CacheStore, LedgerStore, MediaStore, ServiceSigner, StorageProvider
from .cache import SqliteCacheStore
from .ledger import LocalServiceSigner, SqliteLedgerStore, local_signature
from .media import KuboMediaStore, LocalMediaStore

__all__ = [
    "CacheStore",
    "KuboMediaStore",
    "LedgerStore",
    "LocalMediaStore",
    "LocalServiceSigner",
    "MediaStore",
    "ServiceSigner",
    "SqliteCacheStore",
    "SqliteLedgerStore",
    "StorageProvider",
    "local_signature",
]
