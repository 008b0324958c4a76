"""
FastAPI dependencies shared by the routers: the service container and the admin principal.

Admin routes depend on current_principal, which authenticates the admin_session cookie. Authorization
happens inside the services, which receive the principal explicitly:

    @router.get("/admin/orders")
    async def list_orders(
        principal: Principal = Depends(current_principal),
        services: Services = Depends(get_services),
    ):
        return await services.orders.list_orders(principal)
"""
from dataclasses import dataclass

from fastapi import Depends, Request

from cardshop.config import Settings
from cardshop.orders import OrderLifecycleManager
from cardshop.permissions import Principal
from cardshop.sessions import SessionManager
from cardshop.store import KeyValueStore
from cardshop.verification import VerificationWorkflow


@dataclass
class Services:
    settings: Settings
    store: KeyValueStore
    sessions: SessionManager
    orders: OrderLifecycleManager
    verification: VerificationWorkflow


def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_principal(
    request: Request,
    services: Services = Depends(get_services),
) -> Principal:
    """Raises AuthenticationError (401) unless the cookie carries a live session."""
    token = request.cookies.get(services.settings.session_cookie_name)
    return await services.sessions.authenticate(token)
