"""storesync - Optimistic cart and wishlist synchronization over a remote document store."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("storesync")
except PackageNotFoundError:
    __version__ = "0+local"
from storesync.client import StorefrontClient
from storesync.config import DEFAULT_DEBOUNCE_DELAY, SyncConfig
from storesync.engine import SyncEngine
from storesync.exceptions import (
    MalformedSnapshotError,
    RemoteStoreError,
    RemoteUnavailableError,
    StoreSyncError,
    SyncConfigError,
)
from storesync.models import (
    CartDocument,
    CartItem,
    Identity,
    Product,
    Role,
    WishlistDocument,
)
from storesync.remote import HttpDocumentStore, InMemoryDocumentStore, RemoteStore, Subscription
from storesync.state.cache import OptimisticStateCache
from storesync.state.events import EntityStatus, SyncError, SyncErrorKind
from storesync.state.keys import EntityKey, EntityScope
from storesync.state.policy import WritePolicy

__all__ = [
    "__version__",
    "CartDocument",
    "CartItem",
    "DEFAULT_DEBOUNCE_DELAY",
    "EntityKey",
    "EntityScope",
    "EntityStatus",
    "HttpDocumentStore",
    "Identity",
    "InMemoryDocumentStore",
    "MalformedSnapshotError",
    "OptimisticStateCache",
    "Product",
    "RemoteStore",
    "RemoteStoreError",
    "RemoteUnavailableError",
    "Role",
    "StoreSyncError",
    "StorefrontClient",
    "Subscription",
    "SyncConfig",
    "SyncConfigError",
    "SyncEngine",
    "SyncError",
    "SyncErrorKind",
    "WishlistDocument",
    "WritePolicy",
]
