# crm_sync/workers/common.py
from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Optional

from crm_sync import store as col
from crm_sync.errors import StoreContention

if TYPE_CHECKING:
    from crm_sync.context import WorkerContext

logger = logging.getLogger("uvicorn.error")

ID_ATTEMPTS = 5


def now_iso(ctx: "WorkerContext") -> str:
    return ctx.clock().isoformat() + "Z"


def business_id(prefix: str, ctx: "WorkerContext") -> str:
    """e.g. DN-B2B-2026-48213"""
    return f"{prefix}-{ctx.clock().year}-{secrets.randbelow(90000) + 10000}"


async def reserve_number(
    ctx: "WorkerContext",
    collection: str,
    prefix: str,
    owner: str,
    *,
    candidate: Optional[str] = None,
) -> str:
    """
    The business id `owner` holds in `collection`, allocating one on first use.

    The slot is an insert-if-absent reservation keyed by owner, so concurrent
    runs for the same owner all end up with the winner's id. Numbers are
    claimed separately; a run that loses the slot just burns its number.
    `candidate` is tried first when no slot exists yet (adopting a document
    written before slots were kept).
    """
    slot = f"{collection}:{owner}"
    held = await ctx.store.get(col.RESERVATIONS, slot)
    if held:
        return held["number"]

    for attempt in range(ID_ATTEMPTS):
        number = candidate if (candidate and attempt == 0) else business_id(prefix, ctx)
        if number != candidate and await ctx.store.get(collection, number) is not None:
            continue
        if not await ctx.store.create(col.RESERVATIONS, f"{collection}#{number}", {"owner": owner}):
            logger.debug("[WORKER] id %s/%s taken, redrawing", collection, number)
            continue
        if await ctx.store.create(col.RESERVATIONS, slot, {"collection": collection, "owner": owner,
                                                           "number": number}):
            return number
        held = await ctx.store.require(col.RESERVATIONS, slot)
        logger.info("[WORKER] %s slot for %s already held as %s", collection, owner, held["number"])
        return held["number"]
    raise StoreContention(f"could not allocate a {prefix} id")
