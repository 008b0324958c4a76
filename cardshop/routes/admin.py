from typing import Any

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from cardshop.auth import Services, current_principal, get_services
from cardshop.errors import AuthorizationError
from cardshop.models import Order
from cardshop.permissions import Principal, has_admin_access, permissions_for, role_name

router = APIRouter(prefix="/admin", tags=["admin"])


class StatusBody(BaseModel):
    # Any, so a wrong type is answered with the same 400 as an unknown status
    status: Any = None


class ResendBody(BaseModel):
    email_type: Any = Field(default=None, alias="emailType")


class TrackingBody(BaseModel):
    tracking_number: str | None = Field(default=None, alias="trackingNumber")


def _order_json(order: Order) -> dict:
    return order.model_dump(mode="json", by_alias=True)


@router.get("/me")
async def me(principal: Principal = Depends(current_principal)) -> JSONResponse:
    if not has_admin_access(principal.role):
        raise AuthorizationError()
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "user": {"id": principal.subject, "role": str(getattr(principal.role, "value", principal.role))},
            "roleName": role_name(principal.role),
            "permissions": sorted(p.value for p in permissions_for(principal.role)),
            "canAccessAdmin": True,
        },
    )


@router.get("/orders")
async def list_orders(
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """All orders, newest first. Search and status filtering happen in the console."""
    orders = await services.orders.list_orders(principal)
    return JSONResponse(
        status_code=200,
        content={"success": True, "orders": [_order_json(o) for o in orders], "count": len(orders)},
    )


@router.post("/orders")
async def create_order(
    draft: dict = Body(...),
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.orders.create_order(principal, draft)
    return JSONResponse(status_code=201, content={"success": True, "order": _order_json(order)})


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.orders.get_order(principal, order_id)
    return JSONResponse(status_code=200, content={"success": True, "order": _order_json(order)})


@router.patch("/orders/{order_id}/status")
async def update_status(
    order_id: str,
    body: StatusBody,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.orders.update_status(principal, order_id, body.status)
    return JSONResponse(status_code=200, content={"success": True, "order": _order_json(order)})


@router.patch("/orders/{order_id}/tracking")
async def set_tracking_number(
    order_id: str,
    body: TrackingBody,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    order = await services.orders.set_tracking_number(principal, order_id, body.tracking_number)
    return JSONResponse(status_code=200, content={"success": True, "order": _order_json(order)})


@router.post("/orders/{order_id}/resend-email")
async def resend_email(
    order_id: str,
    body: ResendBody,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
) -> JSONResponse:
    """Not idempotent: every call sends another email and adds another emailsSent entry."""
    result = await services.orders.resend_notification(principal, order_id, body.email_type)
    return JSONResponse(
        status_code=200,
        content={"success": True, "result": result.model_dump(mode="json", by_alias=True)},
    )
