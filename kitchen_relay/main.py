from __future__ import annotations

import asyncio
import contextlib
import logging
from functools import lru_cache
from typing import List

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlmodel import Session

from . import crud, schemas
from .change_feed import ChangeFeed, build_change_feed
from .config import get_settings
from .coordinator import OrderingCoordinator
from .database import engine, init_db
from .errors import (
    AlreadyTerminal,
    Conflict,
    DispatchError,
    EmptySelection,
    NotFound,
    PersistenceError,
    UnknownMenuItem,
)
from .notifier import NotificationDispatcher, RetryPolicy, build_gateway
from .repository import ORDERS_TABLE, OrderRepository
from .subscriber import ChangeFeedSubscriber, Projection

logger = logging.getLogger(__name__)

app = FastAPI(title="Kitchen Relay", version="0.1.0")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache
def get_change_feed() -> ChangeFeed:
    return build_change_feed(settings)


@lru_cache
def get_repository() -> OrderRepository:
    return OrderRepository(engine, get_change_feed(), order_number_offset=settings.order_number_offset)


@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(
        build_gateway(settings),
        default_recipient=settings.default_customer_phone,
        retry=RetryPolicy(attempts=settings.dispatch_attempts, backoff=settings.dispatch_backoff),
        workers=settings.dispatch_workers,
    )


def get_coordinator(
    repository: OrderRepository = Depends(get_repository),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> OrderingCoordinator:
    return OrderingCoordinator(
        repository,
        dispatcher,
        default_customer_name=settings.default_customer_name,
        default_customer_phone=settings.default_customer_phone,
    )


@app.on_event("startup")
def on_startup() -> None:
    logging.basicConfig(level=settings.log_level)
    init_db()
    with Session(engine) as session:
        crud.ensure_default_menu_items(session)


@app.on_event("shutdown")
def on_shutdown() -> None:
    if get_dispatcher.cache_info().currsize:
        get_dispatcher().shutdown()


@app.get("/health")
def health_check() -> dict:
    return {"status": "ok"}


@app.get("/menu-items", response_model=List[schemas.MenuItemRead])
def list_menu_items(repository: OrderRepository = Depends(get_repository)):
    try:
        return repository.list_menu_items(available_only=True)
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@app.get("/orders/active", response_model=List[schemas.OrderRead])
def list_active_orders(repository: OrderRepository = Depends(get_repository)):
    try:
        return repository.list_active_orders()
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@app.get("/orders/{order_id}", response_model=schemas.OrderRead)
def get_order(order_id: int, repository: OrderRepository = Depends(get_repository)):
    try:
        return repository.get_order(order_id)
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found") from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@app.post("/orders", response_model=schemas.OrderRead, status_code=status.HTTP_201_CREATED)
def place_order(
    payload: schemas.PlaceOrderRequest,
    coordinator: OrderingCoordinator = Depends(get_coordinator),
):
    try:
        return coordinator.place_order(
            payload.items,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            source=payload.source,
            total_hint=payload.total_amount,
        )
    except (EmptySelection, UnknownMenuItem) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@app.post("/orders/{order_id}/advance", response_model=schemas.AdvanceResult)
def advance_order(
    order_id: int,
    coordinator: OrderingCoordinator = Depends(get_coordinator),
    repository: OrderRepository = Depends(get_repository),
):
    try:
        return schemas.AdvanceResult(applied=True, order=coordinator.advance_status(order_id))
    except Conflict:
        # Someone else already advanced it; hand back what the store holds now.
        return schemas.AdvanceResult(applied=False, order=repository.get_order(order_id))
    except NotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found") from exc
    except AlreadyTerminal as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@app.post("/api/whatsapp")
def send_whatsapp(
    payload: schemas.WhatsAppRequest,
    repository: OrderRepository = Depends(get_repository),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        order = repository.get_order_by_number(payload.order_number)
        dispatcher.send(payload.order_number, payload.status, order.customer_phone if order else None)
    except (DispatchError, PersistenceError) as exc:
        logger.error("Error WhatsApp for order #%s: %s", payload.order_number, exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": "Error enviando mensaje"})
    return {"success": True}


@app.api_route("/api/whatsapp", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
def whatsapp_method_not_allowed():
    return JSONResponse(status_code=status.HTTP_405_METHOD_NOT_ALLOWED, content={"error": "Method not allowed"})


@app.websocket("/ws/orders")
async def orders_feed(
    websocket: WebSocket,
    repository: OrderRepository = Depends(get_repository),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Push the active order list to a kitchen display whenever it changes."""
    await websocket.accept()
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue[Projection] = asyncio.Queue()
    subscriber = ChangeFeedSubscriber(repository, feed, table=ORDERS_TABLE)
    subscriber.add_observer(lambda projection: loop.call_soon_threadsafe(updates.put_nowait, projection))
    await run_in_threadpool(subscriber.start)
    sender = asyncio.create_task(_forward_projections(websocket, updates))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        try:
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await sender
        finally:
            await run_in_threadpool(subscriber.close)


async def _forward_projections(websocket: WebSocket, updates: "asyncio.Queue[Projection]") -> None:
    while True:
        projection = await updates.get()
        await websocket.send_json(
            {"orders": [order.model_dump(mode="json") for order in projection.orders]}
        )
