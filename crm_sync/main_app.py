#=================================================================
# crm_sync/main_app.py
# FastAPI application entry-point: webhooks, admin API, background worker.
#=================================================================

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm_sync.context import WorkerContext, build_context
from crm_sync.db import init_db
from crm_sync.errors import StorageUnavailable
from crm_sync.routes import router as api_router
from crm_sync.webhooks.holded import router as holded_webhooks_router
from crm_sync.webhooks.shopify import router as shopify_webhooks_router
from crm_sync.workers.dispatcher import Dispatcher, worker_loop

# --- Logging setup (console, INFO level) ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s | %(message)s"
)
logger = logging.getLogger("uvicorn.error")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app(ctx: Optional[WorkerContext] = None, start_worker: Optional[bool] = None) -> FastAPI:
    ctx = ctx or build_context()
    if start_worker is None:
        start_worker = ctx.settings.WORKER_ENABLED

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Tables for jobs, dead letters, webhook ledger and documents
        await init_db(ctx.engine)
        stop: Optional[asyncio.Event] = None
        task: Optional[asyncio.Task] = None
        if start_worker:
            stop = asyncio.Event()
            task = asyncio.create_task(worker_loop(app.state.dispatcher, stop))
        try:
            yield
        finally:
            if stop:
                stop.set()
            if task:
                try:
                    await asyncio.wait_for(task, timeout=5.0)
                except asyncio.TimeoutError:
                    task.cancel()

    app = FastAPI(
        title="CRM Sync Middleware",
        description="Webhook intake and background job pipeline between the CRM, Shopify, Holded and Sendcloud.",
        lifespan=lifespan,
    )
    app.state.ctx = ctx
    app.state.dispatcher = Dispatcher(ctx)

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ctx.settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------------- Include routers ----------------
    app.include_router(shopify_webhooks_router)  # /webhooks/shopify
    app.include_router(holded_webhooks_router)   # /webhooks/holded
    app.include_router(api_router)               # /api/* (HTTP Basic)

    # --- Root endpoint ---
    @app.get("/")
    async def home():
        return {"status": "running", "service": "CRM Sync Middleware"}

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
        logger.error("[API] storage unavailable: %s", exc)
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable, retry later"})

    # --- Global error handler (keeps full stack trace in logs) ---
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled error", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": f"Request failed: {str(exc)}"},
        )

    return app


app = create_app()

#if __name__ == "__main__":
#    import uvicorn
#
#    uvicorn.run(app, host="0.0.0.0", port=8000)
