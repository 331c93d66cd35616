#!/usr/bin/env python3
"""Watch one account's cart and wishlist documents live.

Signs in as ``--owner``, optionally applies a few mutations, then prints
every cache change and sync error until interrupted (or ``--duration``
elapses). Configuration is read from ``STORESYNC_*`` environment
variables.

Example::

    STORESYNC_BASE_URL=http://localhost:8080 \\
        python scripts/watch_documents.py --owner u1 --add p1 --toggle p2 -v
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Allow running from repo root without installing the package.
_src = Path(__file__).resolve().parent.parent / "src"
if _src.is_dir():
    sys.path.insert(0, str(_src))

from storesync import StorefrontClient, SyncConfig, SyncError  # noqa: E402
from storesync.models import CartItem  # noqa: E402


def _render(value: Any) -> Any:
    if value is None:
        return None
    return [item.model_dump(by_alias=True, exclude_none=True) if isinstance(item, CartItem) else item for item in value]


def _emit(kind: str, payload: dict[str, Any], *, json_mode: bool) -> None:
    now = datetime.now(UTC).isoformat(timespec="milliseconds")
    if json_mode:
        print(json.dumps({"time": now, "event": kind, **payload}, default=str, ensure_ascii=False), flush=True)
        return
    details = " ".join(f"{key}={value}" for key, value in payload.items())
    print(f"[{now}] {kind:<6} {details}", flush=True)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print live cart/wishlist changes for one account.")
    parser.add_argument("--owner", required=True, help="Account id whose documents are watched")
    parser.add_argument("--add", action="append", default=[], metavar="PRODUCT", help="Add PRODUCT to the cart")
    parser.add_argument(
        "--toggle",
        action="append",
        default=[],
        metavar="PRODUCT",
        help="Toggle PRODUCT in the wishlist",
    )
    parser.add_argument("--duration", type=float, default=None, help="Stop after SECONDS (default: run until Ctrl-C)")
    parser.add_argument("--json", action="store_true", dest="json_mode", help="Output one JSON object per line")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> None:
    config = SyncConfig.from_env()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    def on_change(scope: str, value: Any) -> None:
        _emit("change", {"scope": scope, "items": _render(value)}, json_mode=args.json_mode)

    def on_error(error: SyncError) -> None:
        _emit("error", {"scope": error.key, "kind": error.kind, "message": error.message}, json_mode=args.json_mode)

    async with StorefrontClient(config, on_change=on_change, on_error=on_error) as client:
        identity = await client.sign_in(args.owner)
        _emit(
            "ready",
            {"owner": identity.owner_id, "cart": client.cart_count, "wishlist": client.wishlist_count},
            json_mode=args.json_mode,
        )
        for product_id in args.add:
            client.add_to_cart({"id": product_id})
        for product_id in args.toggle:
            client.toggle_wishlist(product_id)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=args.duration)


def main() -> None:
    args = _parse_args()
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")
    else:
        logging.basicConfig(level=logging.WARNING)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
