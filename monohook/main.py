"""
FastAPI application entry point.
monohook - a single HTTP webhook endpoint that executes a command.
"""
from __future__ import annotations

import json
import logging
import os
import signal
import sys
import time
import uuid as _uuid
from typing import Callable, Optional

from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from monohook.routers import hook
from monohook.services.admission_queue import AdmissionQueue
from monohook.services.invoker import CommandInvoker
from monohook.services.jobs import JobBuilder
from monohook.services.scheduler import WorkerScheduler
from monohook.settings import HookConfig

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ---- Logging setup ----
class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "severity": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Include traceback if present
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def configure_logging(quiet: bool = False, fmt: Optional[str] = None, level: Optional[str] = None) -> None:
    """
    Route diagnostics to stderr; the command's own output owns stdout.
    Quiet mode silences every logger, errors included.
    """
    fmt = (fmt or os.getenv("MONOHOOK_LOG_FORMAT", "text")).lower()
    level = (level or os.getenv("MONOHOOK_LOG_LEVEL", "INFO")).upper()

    handler = logging.StreamHandler(sys.stderr)
    if fmt == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.CRITICAL + 1 if quiet else level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers = []
        uv_logger.propagate = True
        uv_logger.setLevel(logging.NOTSET)


# ---- Request/Response logging middleware ----
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-Id") or str(_uuid.uuid4())
        start = time.time()

        request.state.request_id = request_id

        logger.debug(
            f"REQ {request.method} {request.url.path} "
            f"ip={request.client.host if request.client else '-'} rid={request_id}"
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(f"Uncaught exception in request pipeline rid={request_id}")
            raise

        dur_ms = int((time.time() - start) * 1000)
        logger.info(
            f"RES {request.method} {request.url.path} "
            f"status={response.status_code} durMs={dur_ms} rid={request_id}"
        )
        response.headers["X-Request-Id"] = request_id
        return response


def _terminate(exc: BaseException) -> None:
    """A dead scheduler can never drain the queue; bring the server down."""
    os.kill(os.getpid(), signal.SIGTERM)


def create_app(
    config: HookConfig,
    invoker: Optional[CommandInvoker] = None,
    on_scheduler_crash: Optional[Callable[[BaseException], None]] = _terminate,
) -> FastAPI:
    """Build the app with its own queue, builder and scheduler."""
    app = FastAPI(
        title="monohook",
        description="Single HTTP webhook endpoint that executes a command",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    admission_queue = AdmissionQueue(config.buffer)
    scheduler = WorkerScheduler(
        admission_queue,
        invoker or CommandInvoker(),
        config.concurrency,
        on_crash=on_scheduler_crash,
    )

    app.state.config = config
    app.state.admission_queue = admission_queue
    app.state.job_builder = JobBuilder(config)
    app.state.scheduler = scheduler

    app.add_middleware(RequestIDMiddleware)

    # --- Error handlers ---
    # Covers fastapi.HTTPException and the router's own 404/405.
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return Response(status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return Response(status_code=500)

    app.include_router(hook.router)

    # --- Startup/shutdown ---
    @app.on_event("startup")
    async def startup():
        scheduler.start()
        logger.info(
            "Listening on port %d | command=%s buffer=%d concurrency=%d",
            config.port,
            config.command,
            config.buffer,
            config.concurrency,
        )

    @app.on_event("shutdown")
    async def shutdown():
        logger.info("Shutting down monohook...")
        await scheduler.stop()

    return app
