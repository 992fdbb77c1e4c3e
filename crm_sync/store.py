# crm_sync/store.py
"""
Document store over the `documents` table.

Collections hold JSON documents with camelCase keys. Writes are field-level
merges guarded by a per-document version, so two workers touching unrelated
fields of the same shipment do not clobber each other.
"""
from __future__ import annotations

import copy
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_sync.db import utcnow
from crm_sync.errors import NotFound, StorageUnavailable, StoreContention
from crm_sync.models.documents import Document

logger = logging.getLogger("uvicorn.error")

# Collections
ORDERS = "orders"
ACCOUNTS = "accounts"
PARTIES = "parties"
SHIPMENTS = "shipments"
DELIVERY_NOTES = "deliveryNotes"
PARCEL_LABELS = "parcelLabels"
INVOICES = "invoices"
PRODUCTS = "products"
EXPENSES = "expenses"
FINANCE_LINKS = "financeLinks"
PAYMENT_LINKS = "paymentLinks"
RESERVATIONS = "reservations"


def deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive dict merge; lists and scalars in `patch` replace."""
    out = copy.deepcopy(base)
    for k, v in patch.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = copy.deepcopy(v)
    return out


def get_path(doc: Dict[str, Any], path: str) -> Any:
    cur: Any = doc
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur


def _now_iso() -> str:
    return utcnow().isoformat() + "Z"


class DocumentStore:
    def __init__(self, sessions: async_sessionmaker[AsyncSession], *, max_cas_retries: int = 5):
        self._sessions = sessions
        self.max_cas_retries = max_cas_retries

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex[:20]

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessions() as session:
                yield session
        except IntegrityError:
            raise
        except DBAPIError as e:
            logger.error("[STORE] database error: %s", e)
            raise StorageUnavailable(str(e)) from e

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        async with self._session() as session:
            row = await session.get(Document, (collection, doc_id))
            return copy.deepcopy(row.data) if row else None

    async def require(self, collection: str, doc_id: str, label: str | None = None) -> Dict[str, Any]:
        doc = await self.get(collection, doc_id)
        if doc is None:
            raise NotFound(f"{label or collection} {doc_id} not found")
        return doc

    async def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        """Insert if absent. Returns False when the document already exists."""
        now = _now_iso()
        body = {**copy.deepcopy(data), "id": doc_id}
        body.setdefault("createdAt", now)
        body["updatedAt"] = now
        try:
            async with self._session() as session:
                session.add(Document(collection=collection, id=doc_id, data=body, version=1))
                await session.commit()
        except IntegrityError:
            return False
        return True

    async def merge(
        self,
        collection: str,
        doc_id: str,
        patch: Dict[str, Any],
        *,
        create: bool = True,
    ) -> Dict[str, Any]:
        """
        Field-level merge of `patch` into the document (optimistic, versioned).
        Creates the document when missing unless create=False.
        """
        for _ in range(self.max_cas_retries):
            async with self._session() as session:
                row = await session.get(Document, (collection, doc_id))
                if row is not None:
                    merged = await self._cas_write(session, row, patch)
                    if merged is not None:
                        return merged
                    continue
            if not create:
                raise NotFound(f"{collection} {doc_id} not found")
            if await self.create(collection, doc_id, patch):
                return await self.require(collection, doc_id)
            # lost the insert race; merge into the winner on the next pass
        raise StoreContention(f"{collection} {doc_id}: too many concurrent writers")

    async def update_if(
        self,
        collection: str,
        doc_id: str,
        expect: Dict[str, Any],
        patch: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """
        Merge `patch` only while every dotted path in `expect` still holds the
        given value (a missing field reads as None). Returns the merged document,
        or None when the expectation failed or the document does not exist.
        """
        for _ in range(self.max_cas_retries):
            async with self._session() as session:
                row = await session.get(Document, (collection, doc_id))
                if row is None:
                    return None
                data = row.data or {}
                if any(get_path(data, p) != v for p, v in expect.items()):
                    return None
                merged = await self._cas_write(session, row, patch)
                if merged is not None:
                    return merged
        raise StoreContention(f"{collection} {doc_id}: too many concurrent writers")

    async def _cas_write(
        self, session: AsyncSession, row: Document, patch: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Conditional write on the row version; None when another writer got there first."""
        collection, doc_id, version = row.collection, row.id, row.version
        merged = deep_merge(row.data or {}, patch)
        merged["id"] = doc_id
        merged["updatedAt"] = _now_iso()
        res = await session.execute(
            update(Document)
            .where(
                Document.collection == collection,
                Document.id == doc_id,
                Document.version == version,
            )
            .values(data=merged, version=version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 1:
            await session.commit()
            return merged
        await session.rollback()
        logger.debug("[STORE] version conflict on %s/%s; retrying", collection, doc_id)
        return None

    async def find(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Equality match on (dotted) field paths, oldest first."""
        filters = filters or {}
        stmt = select(Document).where(Document.collection == collection)
        py_filters: Dict[str, Any] = {}
        for path, value in filters.items():
            if isinstance(value, str):
                parts = tuple(path.split("."))
                key = parts[0] if len(parts) == 1 else parts
                stmt = stmt.where(Document.data[key].as_string() == value)
            else:
                py_filters[path] = value
        stmt = stmt.order_by(Document.created_at, Document.id)
        if limit is not None and not py_filters:
            stmt = stmt.limit(limit)

        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()

        out: List[Dict[str, Any]] = []
        for row in rows:
            data = row.data or {}
            if all(get_path(data, p) == v for p, v in py_filters.items()):
                out.append(copy.deepcopy(data))
                if limit is not None and len(out) >= limit:
                    break
        return out

    async def find_one(self, collection: str, filters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        found = await self.find(collection, filters, limit=1)
        return found[0] if found else None
