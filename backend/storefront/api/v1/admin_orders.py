"""
Administrator order management API endpoints.

This module implements the FastAPI router used by the admin panel to
search orders, move them through their lifecycle, decide returns, issue
refunds and read order statistics. Every endpoint requires an
administrator.
"""

from datetime import datetime
from math import ceil
from typing import Annotated, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from storefront.api.deps import CurrentAdmin, get_order_service
from storefront.api.errors import DOMAIN_ERRORS, to_http_exception
from storefront.core.logging import get_logger
from storefront.database.models.order import OrderStatus
from storefront.schemas.orders import (
    MarkFailedRequest,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    RefundRequest,
    ReturnDecisionRequest,
    UpdatePaymentStatusRequest,
    UpdateStatusRequest,
)
from storefront.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(prefix="/admin/orders", tags=["admin"])

OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders",
)
async def list_orders(
    admin: CurrentAdmin,
    service: OrderServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    status: Optional[OrderStatus] = None,
    search: Annotated[Optional[str], Query(max_length=100)] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> OrderListResponse:
    orders, total = await service.list_orders(
        page=page,
        limit=limit,
        status=status,
        search=search,
        start_date=start_date,
        end_date=end_date,
    )
    return OrderListResponse(
        items=[OrderResponse.from_order(order) for order in orders],
        total=total,
        page=page,
        limit=limit,
        pages=ceil(total / limit) if total else 0,
    )


@router.get(
    "/stats",
    response_model=OrderStatsResponse,
    summary="Order statistics",
)
async def get_order_stats(
    admin: CurrentAdmin,
    service: OrderServiceDep,
    period: Literal["7d", "30d", "90d"] = "30d",
) -> OrderStatsResponse:
    try:
        stats = await service.get_stats(period)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderStatsResponse(**stats)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order",
)
async def get_order(
    order_id: UUID,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.get_order(order_id)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.patch(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Change order status",
)
async def update_order_status(
    order_id: UUID,
    payload: UpdateStatusRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Raises:
        HTTPException: 400 if the transition is not allowed, 404 if not found
    """
    logger.info(
        "Order status change requested",
        order_id=str(order_id),
        status=payload.status.value,
        admin_id=str(admin.id),
    )
    try:
        order = await service.update_status(
            order_id,
            payload.status,
            admin,
            notes=payload.notes,
            tracking_number=payload.tracking_number,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.patch(
    "/{order_id}/payment-status",
    response_model=OrderResponse,
    summary="Change payment status",
)
async def update_payment_status(
    order_id: UUID,
    payload: UpdatePaymentStatusRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.update_payment_status(
            order_id, payload.status, admin, reason=payload.reason
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.post(
    "/{order_id}/return-decision",
    response_model=OrderResponse,
    summary="Approve or reject a return",
)
async def decide_return(
    order_id: UUID,
    payload: ReturnDecisionRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.handle_return_request(
            order_id,
            payload.action,
            admin,
            notes=payload.notes,
            refund_amount=payload.refund_amount,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.post(
    "/{order_id}/refunds",
    response_model=OrderResponse,
    summary="Refund an order",
)
async def refund_order(
    order_id: UUID,
    payload: RefundRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Raises:
        HTTPException: 400 for invalid amounts, 502 if Stripe rejects the refund
    """
    try:
        order = await service.process_refund(
            order_id,
            payload.amount,
            admin,
            reason=payload.reason,
            method=payload.method,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.post(
    "/{order_id}/fail",
    response_model=OrderResponse,
    summary="Mark order as failed",
)
async def mark_order_failed(
    order_id: UUID,
    payload: MarkFailedRequest,
    admin: CurrentAdmin,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.mark_failed(order_id, payload.reason, admin)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)
