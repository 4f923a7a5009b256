"""Order lookup endpoints used by the storefront pages.

- Checkout success page polls by Stripe session id until the webhook lands
- Track-order page looks up by order reference plus email
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from storefront.errors import PersistenceFailure

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders")


@router.get("/session/{session_id}")
async def order_for_session(session_id: str, request: Request):
    """Order id for a checkout session, 404 until reconciled."""
    store = request.app.state.store
    try:
        order = await run_in_threadpool(store.find_order_by_session, session_id)
    except PersistenceFailure:
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    if order is None:
        return JSONResponse({"error": "Order not found"}, status_code=404)
    return {"orderId": order.id}


@router.get("/track")
async def track_order(request: Request, orderId: str | None = None, email: str | None = None):
    """Order with items, matched by reference and (case-insensitive) email."""
    if not orderId or not email:
        return JSONResponse(
            {"error": "Order ID and email are required"}, status_code=400
        )
    store = request.app.state.store
    try:
        order = await run_in_threadpool(store.track_order, orderId.strip(), email.strip())
    except PersistenceFailure:
        return JSONResponse({"error": "Internal server error"}, status_code=500)
    if order is None:
        return JSONResponse({"error": "Order not found"}, status_code=404)
    return order.to_dict()
