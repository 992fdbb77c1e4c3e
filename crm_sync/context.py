# crm_sync/context.py
"""
Process wiring: one object carrying the store, queue, ledger and the
external clients, built once at startup and handed to workers and routes.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from crm_sync.clients.holded import HoldedClient
from crm_sync.clients.renderer import DocumentRenderer
from crm_sync.clients.sendcloud import SendcloudClient
from crm_sync.clients.shopify import ShopifyClient
from crm_sync.config import Settings, settings as default_settings
from crm_sync.db import get_engine, get_sessionmaker, make_engine, utcnow
from crm_sync.store import DocumentStore
from crm_sync.webhooks.ledger import EventLedger
from crm_sync.workers.queue import JobQueue


@dataclass
class WorkerContext:
    settings: Settings
    engine: AsyncEngine
    store: DocumentStore
    queue: JobQueue
    ledger: EventLedger
    shopify: Any
    holded: Any
    sendcloud: Any
    renderer: Any
    clock: Callable[[], datetime] = field(default=utcnow)


def build_context(
    cfg: Settings | None = None,
    *,
    engine: AsyncEngine | None = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], datetime] | None = None,
    shopify: Any = None,
    holded: Any = None,
    sendcloud: Any = None,
    renderer: Any = None,
) -> WorkerContext:
    cfg = cfg or default_settings
    clock = clock or utcnow
    if engine is None and cfg.DATABASE_URL == default_settings.DATABASE_URL:
        engine = get_engine()
        sessions = get_sessionmaker()
    else:
        engine = engine or make_engine(cfg.DATABASE_URL)
        sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    return WorkerContext(
        settings=cfg,
        engine=engine,
        store=DocumentStore(sessions),
        queue=JobQueue(sessions, settings=cfg, clock=clock),
        ledger=EventLedger(sessions, pending_timeout_sec=cfg.WEBHOOK_PENDING_TIMEOUT_SEC, clock=clock),
        shopify=shopify or ShopifyClient(cfg.shopify(), transport=transport),
        holded=holded or HoldedClient(cfg.holded(), transport=transport),
        sendcloud=sendcloud or SendcloudClient(cfg.sendcloud(), transport=transport),
        renderer=renderer
        or DocumentRenderer(
            cfg.DOCUMENTS_DIR,
            cfg.DOCUMENTS_BASE_URL,
            company={"name": cfg.COMPANY_NAME, "vat": cfg.COMPANY_VAT},
            app_base_url=cfg.APP_BASE_URL,
        ),
        clock=clock,
    )
