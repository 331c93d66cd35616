"""Remote document-store backends.

Every backend implements :class:`storesync.remote.base.RemoteStore`.
"""

from storesync.remote.base import RemoteStore, Subscription
from storesync.remote.http import HttpDocumentStore
from storesync.remote.memory import InMemoryDocumentStore

__all__ = ["HttpDocumentStore", "InMemoryDocumentStore", "RemoteStore", "Subscription"]
