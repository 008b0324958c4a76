from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cardshop.auth import Services, get_services

router = APIRouter(prefix="/admin-login", tags=["admin"])


class LoginBody(BaseModel):
    pin: str | None = None


def _set_session_cookie(response: JSONResponse, services: Services, value: str, max_age: int) -> None:
    response.set_cookie(
        key=services.settings.session_cookie_name,
        value=value,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="strict",
        secure=services.settings.session_cookie_secure,
    )


@router.post("")
async def login(body: LoginBody, services: Services = Depends(get_services)) -> JSONResponse:
    """Check the admin PIN and set the admin_session cookie (24h, http-only, same-site strict)."""
    session = await services.sessions.login(body.pin)
    response = JSONResponse(
        status_code=200,
        content={"success": True, "message": "Admin login successful", "expiresAt": session.expires_at},
    )
    _set_session_cookie(response, services, session.token, session.max_age)
    return response


@router.delete("")
async def logout(request: Request, services: Services = Depends(get_services)) -> JSONResponse:
    """Revoke the session server-side, then overwrite the cookie with an expired one."""
    await services.sessions.destroy_session(request.cookies.get(services.settings.session_cookie_name))
    response = JSONResponse(
        status_code=200,
        content={"success": True, "message": "Logged out successfully"},
    )
    _set_session_cookie(response, services, "", 0)
    return response
