from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest

from storesync.config import SyncConfig
from storesync.engine import SyncEngine
from storesync.exceptions import RemoteUnavailableError
from storesync.models.documents import CartItem
from storesync.models.identity import Identity
from storesync.mutations import add_item, add_product, remove_product, set_quantity
from storesync.remote.base import ErrorCallback, SnapshotCallback, Subscription
from storesync.remote.memory import InMemoryDocumentStore
from storesync.state.events import EntityStatus, SyncError, SyncErrorKind
from storesync.state.keys import EntityKey, EntityScope

DELAY = 0.02

CART_U1 = EntityKey(EntityScope.CART, "u1")
WISHLIST_U1 = EntityKey(EntityScope.WISHLIST, "u1")


def _config(**overrides: Any) -> SyncConfig:
    return SyncConfig(**{"debounce_delay": DELAY, "mqtt_enabled": False, **overrides})


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _past_debounce() -> None:
    await asyncio.sleep(DELAY * 5)
    await _settle()


@dataclass
class _RecordingStore(InMemoryDocumentStore):
    """Memory store that keeps every callback handed to ``subscribe``."""

    callbacks: dict[str, tuple[SnapshotCallback, ErrorCallback | None]] = field(default_factory=dict)

    def subscribe(
        self,
        key: EntityKey,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        self.callbacks[key.path] = (on_snapshot, on_error)
        return super().subscribe(key, on_snapshot, on_error)


def _engine(store: InMemoryDocumentStore, **config: Any) -> tuple[SyncEngine, list[SyncError]]:
    errors: list[SyncError] = []
    engine = SyncEngine(store, config=_config(**config), on_error=errors.append)
    return engine, errors


# ----------------------------------------------------------------------
# Local writes
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_mutation_is_visible_synchronously_and_written_once() -> None:
    store = InMemoryDocumentStore()
    engine, errors = _engine(store)
    await engine.set_owner("u1")

    engine.mutate("cart", add_item("p1", price=9.5))
    engine.mutate("cart", add_item("p1", price=9.5))

    assert engine.cart == (CartItem(product_id="p1", quantity=2, price=9.5),)
    assert engine.has_pending_write("cart")
    assert store.set_calls == []

    await _past_debounce()

    assert len(store.set_calls) == 1
    key, document = store.set_calls[0]
    assert key == CART_U1
    assert document["ownerId"] == "u1"
    assert document["items"] == [{"productId": "p1", "quantity": 2, "price": 9.5}]
    assert "updatedAt" in document
    assert not engine.has_pending_write("cart")
    assert errors == []
    await engine.aclose()


@pytest.mark.asyncio
async def test_burst_of_mutations_writes_only_the_final_value() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")

    engine.mutate("wishlist", add_product("p1"))
    engine.mutate("wishlist", add_product("p2"))
    engine.mutate("wishlist", remove_product("p1"))
    await _past_debounce()

    assert [(key, document["items"]) for key, document in store.set_calls] == [(WISHLIST_U1, ["p2"])]
    await engine.aclose()


@pytest.mark.asyncio
async def test_echo_of_own_write_does_not_notify() -> None:
    store = InMemoryDocumentStore()
    changes: list[tuple[str, Any]] = []
    engine = SyncEngine(store, config=_config(), on_change=lambda key, value: changes.append((key, value)))
    await engine.set_owner("u1")
    await _settle()
    changes.clear()

    engine.mutate("cart", add_item("p1"))
    await _past_debounce()

    assert changes == [("cart", (CartItem(product_id="p1"),))]
    assert engine.last_error is None
    await engine.aclose()


@pytest.mark.asyncio
async def test_non_positive_quantity_removes_the_line() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")

    engine.mutate("cart", add_item("p1"))
    engine.mutate("cart", add_item("p2", quantity=3))
    engine.mutate("cart", set_quantity("p1", 0))
    engine.mutate("cart", lambda items: (*items, {"productId": "p3", "quantity": -1}))

    assert engine.cart == (CartItem(product_id="p2", quantity=3),)
    await engine.flush()
    assert store.documents[CART_U1.path]["items"] == [{"productId": "p2", "quantity": 3}]
    await engine.aclose()


@pytest.mark.asyncio
async def test_mutation_without_owner_is_ignored() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)

    assert engine.mutate("cart", add_item("p1")) is None
    assert engine.read("cart") is None
    await _past_debounce()

    assert store.set_calls == []


@pytest.mark.asyncio
async def test_update_function_errors_propagate_without_writing() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")

    def _broken(_items: Any) -> Any:
        raise RuntimeError("bad update")

    with pytest.raises(RuntimeError, match="bad update"):
        engine.mutate("cart", _broken)

    assert engine.cart == ()
    assert not engine.has_pending_write("cart")
    await engine.aclose()


@pytest.mark.asyncio
async def test_aclose_with_flush_sends_pending_writes() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store, debounce_delay=60.0)
    await engine.set_owner("u1")
    engine.mutate("wishlist", add_product("p1"))
    await asyncio.sleep(DELAY * 5)
    assert store.set_calls == []

    await engine.aclose(flush=True)

    assert store.documents[WISHLIST_U1.path]["items"] == ["p1"]
    assert engine.read("wishlist") is None


@pytest.mark.asyncio
async def test_aclose_without_flush_drops_pending_writes() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")
    engine.mutate("wishlist", add_product("p1"))

    await engine.aclose()
    await _past_debounce()

    assert store.set_calls == []


# ----------------------------------------------------------------------
# Remote snapshots
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_initial_document_is_loaded() -> None:
    store = InMemoryDocumentStore()
    store.documents[CART_U1.path] = {"userId": "u1", "items": [{"productId": "p1", "quantity": 2, "price": 3.0}]}
    engine, _errors = _engine(store)

    await engine.set_owner("u1")

    assert engine.cart == (CartItem(product_id="p1", quantity=2, price=3.0),)
    assert engine.wishlist == ()
    assert engine.status("cart") is EntityStatus.LIVE
    assert engine.cart_total() == 6.0
    await engine.aclose()


@pytest.mark.asyncio
async def test_remote_change_is_applied_when_no_write_is_pending() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")
    await _settle()

    store.put(CART_U1, {"ownerId": "u1", "items": [{"productId": "p3", "quantity": 1}]})
    await _settle()

    assert engine.cart == (CartItem(product_id="p3"),)
    await engine.aclose()


@pytest.mark.asyncio
async def test_remote_snapshot_is_ignored_while_write_is_armed() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")
    await _settle()

    engine.mutate("cart", add_item("p1"))
    store.put(CART_U1, {"ownerId": "u1", "items": [{"productId": "p2", "quantity": 1}]})
    await _settle()

    assert engine.cart == (CartItem(product_id="p1"),)

    await _past_debounce()
    assert engine.cart == (CartItem(product_id="p1"),)
    assert store.documents[CART_U1.path]["items"] == [{"productId": "p1", "quantity": 1}]

    store.put(CART_U1, {"ownerId": "u1", "items": [{"productId": "p2", "quantity": 1}]})
    await _settle()
    assert engine.cart == (CartItem(product_id="p2"),)
    await engine.aclose()


@pytest.mark.asyncio
async def test_remote_snapshot_is_ignored_while_write_is_in_flight() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")
    await _settle()

    store.latency = DELAY * 4
    engine.mutate("cart", add_item("p1"))
    await asyncio.sleep(DELAY * 2)
    assert engine.has_pending_write("cart")

    store.emit(CART_U1, {"ownerId": "u1", "items": [{"productId": "p2", "quantity": 1}]})
    await _settle()
    assert engine.cart == (CartItem(product_id="p1"),)

    await engine.flush()
    await _settle()
    assert engine.cart == (CartItem(product_id="p1"),)
    assert not engine.has_pending_write("cart")
    await engine.aclose()


@pytest.mark.asyncio
async def test_malformed_snapshot_is_reported_and_treated_as_empty() -> None:
    store = InMemoryDocumentStore()
    engine, errors = _engine(store)
    await engine.set_owner("u1")
    engine.mutate("cart", add_item("p1"))
    await engine.flush()
    await _settle()

    store.emit(CART_U1, {"ownerId": "u1", "items": "oops"})
    await _settle()

    assert engine.cart == ()
    assert len(errors) == 1
    assert errors[0].kind is SyncErrorKind.MALFORMED_SNAPSHOT
    assert errors[0].key == "cart"
    assert errors[0].path == CART_U1.path
    assert engine.last_error == errors[0]

    store.emit(CART_U1, "not a document")
    await _settle()
    assert [error.kind for error in errors] == [SyncErrorKind.MALFORMED_SNAPSHOT] * 2
    await engine.aclose()


@pytest.mark.asyncio
async def test_malformed_initial_document_goes_live_empty() -> None:
    store = InMemoryDocumentStore()
    store.documents[CART_U1.path] = {"ownerId": "u1", "items": [{"quantity": 2}]}
    engine, errors = _engine(store)

    await engine.set_owner("u1")

    assert engine.cart == ()
    assert engine.status("cart") is EntityStatus.LIVE
    assert errors and errors[0].kind is SyncErrorKind.MALFORMED_SNAPSHOT
    await engine.aclose()


# ----------------------------------------------------------------------
# Failures
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failed_write_is_reported_once_and_local_value_kept() -> None:
    store = InMemoryDocumentStore()
    engine, errors = _engine(store)
    await engine.set_owner("u1")
    store.available = False

    engine.mutate("cart", add_item("p1"))
    await _past_debounce()
    await asyncio.sleep(DELAY * 5)

    assert engine.cart == (CartItem(product_id="p1"),)
    assert len(store.set_calls) == 1
    assert [error.kind for error in errors] == [SyncErrorKind.REMOTE_UNAVAILABLE]
    assert errors[0].path == CART_U1.path
    await engine.aclose()


@pytest.mark.asyncio
async def test_rollback_policy_restores_last_confirmed_value() -> None:
    store = InMemoryDocumentStore()
    store.documents[CART_U1.path] = {"ownerId": "u1", "items": [{"productId": "p0", "quantity": 1}]}
    engine, errors = _engine(store, write_policy="rollback")
    await engine.set_owner("u1")
    await _settle()
    store.available = False

    engine.mutate("cart", add_item("p1"))
    assert engine.is_in_cart("p1")
    await _past_debounce()

    assert engine.cart == (CartItem(product_id="p0"),)
    assert len(errors) == 1
    await engine.aclose()


@dataclass
class _RejectingStore(InMemoryDocumentStore):
    """Memory store that serves reads but rejects every write."""

    async def set(self, key: EntityKey, document: Any) -> None:
        self.set_calls.append((key, dict(document)))
        raise RemoteUnavailableError(f"Write rejected for {key.path}", path=key.path)


@pytest.mark.asyncio
async def test_rollback_rereads_document_changed_while_write_was_pending() -> None:
    store = _RejectingStore()
    engine, errors = _engine(store, write_policy="rollback")
    await engine.set_owner("u1")
    await _settle()

    engine.mutate("cart", add_item("p1"))
    store.put(CART_U1, {"ownerId": "u1", "items": [{"productId": "p5", "quantity": 2}]})
    await _settle()
    assert engine.cart == (CartItem(product_id="p1"),)

    await _past_debounce()

    assert engine.cart == (CartItem(product_id="p5", quantity=2),)
    assert not engine.has_pending_write("cart")
    assert [error.kind for error in errors] == [SyncErrorKind.REMOTE_UNAVAILABLE]
    assert len(store.get_calls) == 3
    await engine.aclose()


@pytest.mark.asyncio
async def test_optimistic_policy_does_not_reread_after_failed_write() -> None:
    store = _RejectingStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")
    engine.mutate("cart", add_item("p1"))

    await _past_debounce()

    assert engine.cart == (CartItem(product_id="p1"),)
    assert len(store.get_calls) == 2
    await engine.aclose()


@pytest.mark.asyncio
async def test_initial_load_failure_is_reported_and_engine_still_goes_live() -> None:
    store = InMemoryDocumentStore(available=False)
    engine, errors = _engine(store)

    await engine.set_owner("u1")

    assert engine.cart == ()
    assert engine.wishlist == ()
    assert engine.status("cart") is EntityStatus.LIVE
    assert engine.status("wishlist") is EntityStatus.LIVE
    assert errors
    assert {error.kind for error in errors} == {SyncErrorKind.REMOTE_UNAVAILABLE}
    assert {error.key for error in errors} == {"cart", "wishlist"}
    await engine.aclose()


@pytest.mark.asyncio
async def test_subscription_error_is_reported() -> None:
    store = InMemoryDocumentStore()
    engine, errors = _engine(store)
    await engine.set_owner("u1")
    await _settle()

    store.fail_subscribers(WISHLIST_U1, RemoteUnavailableError("stream closed"))
    await _settle()

    assert len(errors) == 1
    assert errors[0].key == "wishlist"
    assert "stream closed" in errors[0].message
    await engine.aclose()


@pytest.mark.asyncio
async def test_failing_error_listener_does_not_break_reporting() -> None:
    store = InMemoryDocumentStore(available=False)
    engine, errors = _engine(store)

    def _boom(_error: SyncError) -> None:
        raise RuntimeError("toast failed")

    engine.add_error_listener(_boom)
    await engine.set_owner("u1")

    assert errors
    await engine.aclose()


# ----------------------------------------------------------------------
# Owner lifecycle
# ----------------------------------------------------------------------


@pytest.mark.asyncio
async def test_loading_while_initial_load_is_in_progress() -> None:
    store = InMemoryDocumentStore(latency=DELAY)
    engine, _errors = _engine(store)

    task = asyncio.create_task(engine.set_owner("u1"))
    await asyncio.sleep(0)

    assert engine.loading
    assert engine.status("cart") is EntityStatus.SEEDING
    assert engine.cart == ()

    await task
    assert not engine.loading
    assert engine.status("cart") is EntityStatus.LIVE
    await engine.aclose()


@pytest.mark.asyncio
async def test_mutation_while_loading_is_replayed_on_the_loaded_document() -> None:
    store = InMemoryDocumentStore(latency=DELAY)
    store.documents[CART_U1.path] = {"ownerId": "u1", "items": [{"productId": "p9", "quantity": 4}]}
    engine, errors = _engine(store)

    task = asyncio.create_task(engine.set_owner("u1"))
    await asyncio.sleep(0)
    assert engine.status("cart") is EntityStatus.SEEDING

    engine.mutate("cart", add_item("p1"))
    assert engine.cart == (CartItem(product_id="p1"),)
    assert engine.has_pending_write("cart")

    await task
    assert engine.cart == (CartItem(product_id="p9", quantity=4), CartItem(product_id="p1"))
    assert store.set_calls == []

    await _past_debounce()
    await asyncio.sleep(DELAY * 2)
    assert store.documents[CART_U1.path]["items"] == [
        {"productId": "p9", "quantity": 4},
        {"productId": "p1", "quantity": 1},
    ]
    assert len(store.set_calls) == 1
    assert errors == []
    await engine.aclose()


@pytest.mark.asyncio
async def test_mutation_while_loading_is_replayed_on_empty_value_when_load_fails() -> None:
    store = InMemoryDocumentStore(latency=DELAY, available=False)
    engine, errors = _engine(store)

    task = asyncio.create_task(engine.set_owner("u1"))
    await asyncio.sleep(0)
    engine.mutate("wishlist", add_product("p1"))
    await task

    assert engine.status("wishlist") is EntityStatus.LIVE
    assert engine.wishlist == ("p1",)
    assert engine.has_pending_write("wishlist")
    assert any("Initial load" in error.message and error.key == "wishlist" for error in errors)

    store.available = True
    await engine.aclose(flush=True)
    assert store.documents[WISHLIST_U1.path]["items"] == ["p1"]


@pytest.mark.asyncio
async def test_setting_same_owner_again_is_a_noop() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("u1")
    session = engine.session

    await engine.set_owner("u1")
    await engine.set_owner(Identity(owner_id="u1", name="Ada"))

    assert len(store.get_calls) == 2
    assert engine.owner is not None
    assert engine.owner.name == "Ada"
    assert engine.session is not None and session is not None
    assert engine.session.matches(session)
    await engine.aclose()


@pytest.mark.asyncio
async def test_sign_out_clears_cached_values() -> None:
    store = InMemoryDocumentStore()
    changes: list[tuple[str, Any]] = []
    engine = SyncEngine(store, config=_config())
    await engine.set_owner("u1")
    engine.mutate("cart", add_item("p1"))
    engine.add_listener("cart", lambda key, value: changes.append((key, value)))

    await engine.set_owner(None)

    assert engine.owner is None
    assert engine.read("cart") is None
    assert engine.status("cart") is EntityStatus.UNINITIALIZED
    assert changes == [("cart", None)]
    assert store.subscriber_count(CART_U1) == 0
    await _past_debounce()
    assert store.set_calls == []


@pytest.mark.asyncio
async def test_owner_switch_drops_armed_writes_of_previous_owner() -> None:
    store = InMemoryDocumentStore()
    engine, _errors = _engine(store)
    await engine.set_owner("a")
    engine.mutate("cart", add_item("pa"))

    await engine.set_owner("b")
    assert engine.cart == ()
    await _past_debounce()

    assert store.set_calls == []
    assert engine.owner is not None and engine.owner.owner_id == "b"
    await engine.aclose()


@pytest.mark.asyncio
async def test_in_flight_write_of_previous_owner_never_reaches_new_owner() -> None:
    store = InMemoryDocumentStore()
    engine, errors = _engine(store)
    await engine.set_owner("a")
    await _settle()
    engine.mutate("cart", add_item("pa"))
    store.latency = DELAY * 3
    await asyncio.sleep(DELAY * 2)
    assert engine.has_pending_write("cart")

    await engine.set_owner(None)
    await engine.set_owner("b")
    await asyncio.sleep(DELAY * 5)
    await _settle()

    assert engine.cart == ()
    assert store.documents["userCarts/a"]["items"] == [{"productId": "pa", "quantity": 1}]
    assert "userCarts/b" not in store.documents
    assert {key.owner_id for key, _document in store.set_calls} == {"a"}
    assert not engine.has_pending_write("cart")
    assert errors == []
    await engine.aclose()


@pytest.mark.asyncio
async def test_stale_initial_load_is_discarded() -> None:
    store = InMemoryDocumentStore(latency=DELAY)
    store.documents["userCarts/a"] = {"ownerId": "a", "items": [{"productId": "pa", "quantity": 1}]}
    engine, _errors = _engine(store)

    first = asyncio.create_task(engine.set_owner("a"))
    await asyncio.sleep(0)
    await engine.set_owner("b")
    await first
    await _settle()

    assert engine.owner is not None and engine.owner.owner_id == "b"
    assert engine.cart == ()
    assert engine.status("cart") is EntityStatus.LIVE
    assert store.subscriber_count(EntityKey(EntityScope.CART, "a")) == 0
    assert store.subscriber_count(EntityKey(EntityScope.CART, "b")) == 1
    await engine.aclose()


@pytest.mark.asyncio
async def test_callbacks_of_previous_owner_are_ignored() -> None:
    store = _RecordingStore()
    engine, errors = _engine(store)
    await engine.set_owner("a")
    await _settle()
    on_snapshot_a, on_error_a = store.callbacks["userCarts/a"]

    await engine.set_owner("b")
    await _settle()
    on_snapshot_a({"ownerId": "a", "items": [{"productId": "pa", "quantity": 1}]})
    assert on_error_a is not None
    on_error_a(RemoteUnavailableError("late failure"))

    assert engine.cart == ()
    assert errors == []
    await engine.aclose()


@pytest.mark.asyncio
async def test_untracked_scope_is_rejected() -> None:
    engine = SyncEngine(InMemoryDocumentStore(), config=_config(), scopes=("cart",))

    assert engine.scopes == (EntityScope.CART,)
    with pytest.raises(ValueError, match="not tracked"):
        engine.read("wishlist")
