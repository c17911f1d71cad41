"""
Customer order API endpoints.

This module implements the FastAPI router for customers to list and view
their orders, cancel orders before processing starts, and request or
withdraw returns of delivered orders.
"""

from math import ceil
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from storefront.api.deps import CurrentUser, get_order_service
from storefront.api.errors import DOMAIN_ERRORS, to_http_exception
from storefront.core.logging import get_logger
from storefront.database.models.order import OrderStatus
from storefront.schemas.orders import (
    CancelOrderRequest,
    OrderListResponse,
    OrderResponse,
    ReturnRequest,
)
from storefront.services.orders.service import OrderService

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])

OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
)
async def list_my_orders(
    current_user: CurrentUser,
    service: OrderServiceDep,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
    status: Optional[OrderStatus] = None,
) -> OrderListResponse:
    orders, total = await service.list_user_orders(
        current_user, page=page, limit=limit, status=status
    )
    return OrderListResponse(
        items=[OrderResponse.from_order(order) for order in orders],
        total=total,
        page=page,
        limit=limit,
        pages=ceil(total / limit) if total else 0,
    )


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get my order",
)
async def get_my_order(
    order_id: UUID,
    current_user: CurrentUser,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Raises:
        HTTPException: 404 if the order is not the user's
    """
    try:
        order = await service.get_user_order(order_id, current_user)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel my order",
)
async def cancel_my_order(
    order_id: UUID,
    current_user: CurrentUser,
    service: OrderServiceDep,
    payload: Optional[CancelOrderRequest] = None,
) -> OrderResponse:
    """
    Cancel a pending or confirmed order; stock is restored.

    Raises:
        HTTPException: 400 once processing has started, 404 if not found
    """
    try:
        order = await service.cancel_order(
            order_id,
            current_user,
            reason=payload.reason if payload else None,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.post(
    "/{order_id}/return",
    response_model=OrderResponse,
    summary="Request a return",
)
async def request_return(
    order_id: UUID,
    payload: ReturnRequest,
    current_user: CurrentUser,
    service: OrderServiceDep,
) -> OrderResponse:
    """
    Request a return of a delivered order within the return window.

    Cash on delivery orders must include bank details for the refund.

    Raises:
        HTTPException: 400 if the order cannot be returned
    """
    try:
        order = await service.request_return(
            order_id,
            current_user,
            reason=payload.reason,
            items=[item.model_dump() for item in payload.items] if payload.items else None,
            bank_details=payload.bank_details.model_dump() if payload.bank_details else None,
        )
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)


@router.delete(
    "/{order_id}/return",
    response_model=OrderResponse,
    summary="Withdraw a return request",
)
async def cancel_return_request(
    order_id: UUID,
    current_user: CurrentUser,
    service: OrderServiceDep,
) -> OrderResponse:
    try:
        order = await service.cancel_return_request(order_id, current_user)
    except DOMAIN_ERRORS as e:
        raise to_http_exception(e) from e
    return OrderResponse.from_order(order)
