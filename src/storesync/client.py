"""High-level async client for storefront cart and wishlist sync."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from typing import Any

import aiohttp

from storesync._mqtt import DocumentPush, DocumentPushRuntime, build_broker_settings
from storesync._transport import JsonTransport
from storesync.config import SyncConfig
from storesync.engine import ErrorListener, SyncEngine
from storesync.exceptions import StoreSyncError
from storesync.models.documents import CartItem
from storesync.models.identity import Identity
from storesync.models.product import Product
from storesync.mutations import (
    add_item,
    add_product,
    clear_items,
    remove_item,
    remove_product,
    set_quantity,
    toggle_product,
)
from storesync.remote.base import RemoteStore
from storesync.remote.http import HttpDocumentStore
from storesync.state.cache import ChangeListener
from storesync.state.keys import EntityScope

_logger = logging.getLogger(__name__)


def _product_id(product: Product | str) -> str:
    return product if isinstance(product, str) else product.product_id


class StorefrontClient:
    """Async client keeping a signed-in account's cart and wishlist in sync.

    Usage::

        async with StorefrontClient(config) as client:
            await client.sign_in(identity)
            client.add_to_cart(product)
            print(client.cart_total)

    Cart and wishlist actions return immediately; remote writes are
    debounced and happen in the background. Remote failures are reported
    through ``on_error`` and never raised from these methods.
    """

    def __init__(
        self,
        config: SyncConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        store: RemoteStore | None = None,
        on_change: ChangeListener | None = None,
        on_error: ErrorListener | None = None,
        flush_on_close: bool = True,
    ) -> None:
        self._config = config or SyncConfig()
        self._external_session = session is not None
        self._http_session = session
        self._store = store
        self._http_store: HttpDocumentStore | None = None
        self._push_runtime: DocumentPushRuntime | None = None
        self._engine: SyncEngine | None = None
        self._on_change = on_change
        self._on_error = on_error
        self._flush_on_close = flush_on_close

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> StorefrontClient:
        loop = asyncio.get_running_loop()
        store = self._store
        if store is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            if self._config.mqtt_enabled:
                self._push_runtime = DocumentPushRuntime(
                    loop=loop,
                    on_push=self._on_push,
                    on_failure=self._on_push_failure,
                    logger=_logger,
                )
            self._http_store = HttpDocumentStore(
                self._config,
                JsonTransport(self._config, self._http_session),
                push_runtime=self._push_runtime,
            )
            self._start_push()
            store = self._http_store
        self._engine = SyncEngine(
            store,
            config=self._config,
            on_change=self._on_change,
            on_error=self._on_error,
        )
        return self

    async def __aexit__(self, *exc: Any) -> None:
        engine = self._engine
        self._engine = None
        if engine is not None:
            await engine.aclose(flush=self._flush_on_close)
        if self._http_store is not None:
            await self._http_store.close()
            self._http_store = None
        self._stop_push()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    def _start_push(self) -> None:
        """Best-effort MQTT startup (failures fall back to polling)."""
        runtime = self._push_runtime
        if runtime is None:
            return
        try:
            runtime.start(build_broker_settings(self._config))
        except Exception:
            _logger.debug("MQTT startup failed; subscriptions will poll", exc_info=True)

    def _stop_push(self) -> None:
        runtime = self._push_runtime
        self._push_runtime = None
        if runtime is not None:
            runtime.stop()

    def _on_push(self, push: DocumentPush) -> None:
        """Handle a document push (called on the loop via call_soon_threadsafe)."""
        if self._http_store is not None:
            self._http_store.dispatch_push(push)

    def _on_push_failure(self, error: Exception) -> None:
        """Broker refused the connection: poll instead and stop retrying."""
        if self._http_store is not None:
            self._http_store.fail_push(error)
        self._stop_push()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def engine(self) -> SyncEngine:
        if self._engine is None:
            raise StoreSyncError("Client not initialized. Use 'async with StorefrontClient(...) as client:'")
        return self._engine

    # ------------------------------------------------------------------
    # Account
    # ------------------------------------------------------------------

    async def sign_in(self, identity: Identity | Mapping[str, Any] | str) -> Identity:
        """Start syncing the entities of *identity* (replacing any previous owner)."""
        if isinstance(identity, Mapping):
            identity = Identity.model_validate(identity)
        elif isinstance(identity, str):
            identity = Identity(owner_id=identity)
        await self.engine.set_owner(identity)
        return identity

    async def sign_out(self) -> None:
        await self.engine.set_owner(None)

    @property
    def current_user(self) -> Identity | None:
        return self.engine.owner

    @property
    def loading(self) -> bool:
        return self.engine.loading

    # ------------------------------------------------------------------
    # Cart
    # ------------------------------------------------------------------

    @property
    def cart(self) -> tuple[CartItem, ...]:
        return self.engine.cart

    def add_to_cart(self, product: Product | Mapping[str, Any], *, quantity: int = 1) -> None:
        if isinstance(product, Mapping):
            product = Product.model_validate(product)
        self.engine.mutate(
            EntityScope.CART,
            add_item(product.product_id, quantity=quantity, price=product.price, name=product.name),
        )

    def remove_from_cart(self, product: Product | str) -> None:
        self.engine.mutate(EntityScope.CART, remove_item(_product_id(product)))

    def update_cart_quantity(self, product: Product | str, quantity: int) -> None:
        """Set a line's quantity; zero or below removes it."""
        self.engine.mutate(EntityScope.CART, set_quantity(_product_id(product), quantity))

    def clear_cart(self) -> None:
        self.engine.mutate(EntityScope.CART, clear_items())

    @property
    def cart_total(self) -> float:
        return self.engine.cart_total()

    @property
    def cart_item_count(self) -> int:
        return self.engine.cart_item_count()

    @property
    def cart_count(self) -> int:
        return self.engine.cart_count()

    def is_in_cart(self, product: Product | str) -> bool:
        return self.engine.is_in_cart(_product_id(product))

    # ------------------------------------------------------------------
    # Wishlist
    # ------------------------------------------------------------------

    @property
    def wishlist(self) -> tuple[str, ...]:
        return self.engine.wishlist

    def add_to_wishlist(self, product: Product | str) -> None:
        self.engine.mutate(EntityScope.WISHLIST, add_product(_product_id(product)))

    def remove_from_wishlist(self, product: Product | str) -> None:
        self.engine.mutate(EntityScope.WISHLIST, remove_product(_product_id(product)))

    def toggle_wishlist(self, product: Product | str) -> None:
        self.engine.mutate(EntityScope.WISHLIST, toggle_product(_product_id(product)))

    @property
    def wishlist_count(self) -> int:
        return self.engine.wishlist_count()

    def is_in_wishlist(self, product: Product | str) -> bool:
        return self.engine.is_in_wishlist(_product_id(product))

    # ------------------------------------------------------------------
    # Cross-entity moves
    # ------------------------------------------------------------------

    def move_to_wishlist(self, product: Product | str) -> None:
        """Add the product to the wishlist and drop its cart line."""
        self.add_to_wishlist(product)
        self.remove_from_cart(product)

    def move_to_cart(self, product: Product | Mapping[str, Any]) -> None:
        """Add one unit to the cart and drop the product from the wishlist."""
        if isinstance(product, Mapping):
            product = Product.model_validate(product)
        self.add_to_cart(product)
        self.remove_from_wishlist(product)
