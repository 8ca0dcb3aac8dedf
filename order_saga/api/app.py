"""Trigger gateway: accepts orders over HTTP and reports instance status."""

import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from order_saga import __version__
from order_saga.api.models import (
    HistoryEntry,
    OrderAccepted,
    OrderHistory,
    OrderStatus,
    parse_order,
)
from order_saga.config import Settings, get_settings
from order_saga.errors import InstanceNotFound, ValidationError
from order_saga.execution.manager import InstanceManager
from order_saga.runtime import create_manager
from order_saga.storage.events import InstanceStatus


logger = structlog.get_logger(__name__)

INVALID_ORDER_MESSAGE = "Invalid order payload. Please provide valid order details."
SCHEDULE_FAILED_MESSAGE = "An error occurred while starting the orchestration."


def create_app(
    settings: Optional[Settings] = None,
    manager: Optional[InstanceManager] = None
) -> FastAPI:
    """Build the gateway app; the manager is started and stopped with it."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.manager is None:
            app.state.manager = create_manager(settings)
        logger.info("Starting Order Saga gateway")
        await app.state.manager.start()
        yield
        await app.state.manager.stop()
        logger.info("Order Saga gateway shutdown complete")

    app = FastAPI(
        title="Order Saga Orchestrator API",
        description="Durable order fulfillment saga",
        version=__version__,
        lifespan=lifespan
    )
    app.state.manager = manager

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        process_time = time.time() - start_time

        logger.info(
            "Request processed",
            method=request.method,
            url=str(request.url),
            status_code=response.status_code,
            process_time=f"{process_time:.4f}s"
        )
        return response

    @app.exception_handler(InstanceNotFound)
    async def instance_not_found_handler(request: Request, exc: InstanceNotFound):
        return JSONResponse(status_code=404, content={"message": str(exc)})

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__
        }

    @app.post("/orders", status_code=202, response_model=OrderAccepted, response_model_by_alias=True)
    async def submit_order(request: Request):
        try:
            body = json.loads(await request.body() or b"null")
            order = parse_order(body)
        except (ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            logger.info("order_rejected", error=str(e))
            return PlainTextResponse(INVALID_ORDER_MESSAGE, status_code=400)

        try:
            instance_id = await request.app.state.manager.create_instance(order)
        except Exception as e:
            logger.error("order_schedule_failed", error=str(e), exc_info=True)
            return PlainTextResponse(SCHEDULE_FAILED_MESSAGE, status_code=500)

        logger.info("Started orchestration", instance_id=instance_id)

        status_uri = str(request.url_for("get_order_status", instance_id=instance_id))
        accepted = OrderAccepted(
            instance_id=instance_id,
            status_query_get_uri=status_uri,
            history_query_get_uri=str(request.url_for("get_order_history", instance_id=instance_id))
        )
        return JSONResponse(
            status_code=202,
            content=accepted.model_dump(by_alias=True),
            headers={"Location": status_uri}
        )

    @app.get(
        "/orders/{instance_id}/status",
        response_model=OrderStatus,
        response_model_by_alias=True,
        response_model_exclude_none=True
    )
    async def get_order_status(instance_id: str, request: Request):
        instance = await request.app.state.manager.get_status(instance_id)
        return OrderStatus.from_instance(instance)

    @app.get("/orders/{instance_id}/history", response_model=OrderHistory, response_model_by_alias=True)
    async def get_order_history(instance_id: str, request: Request):
        events = await request.app.state.manager.get_history(instance_id)
        return OrderHistory(
            instance_id=instance_id,
            events=[HistoryEntry.from_event(e) for e in events]
        )

    @app.get("/orders", response_model=List[OrderStatus], response_model_by_alias=True,
             response_model_exclude_none=True)
    async def list_orders(request: Request, status: Optional[str] = None, limit: int = 50, offset: int = 0):
        try:
            status_filter = InstanceStatus(status) if status else None
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")

        instances = await request.app.state.manager.list_instances(
            status=status_filter, limit=limit, offset=offset
        )
        return [OrderStatus.from_instance(i) for i in instances]

    return app
