from typing import Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from cardshop.auth import Services, get_services
from cardshop.verification import VerificationState

router = APIRouter(tags=["verification"])


class SendOtpBody(BaseModel):
    mobile: Any = None


class VerifyOtpBody(BaseModel):
    mobile: Any = None
    otp: Any = None


@router.post("/send-mobile-otp")
async def send_mobile_otp(body: SendOtpBody, services: Services = Depends(get_services)) -> JSONResponse:
    result = await services.verification.request_code(body.mobile)
    content = {"success": True, "message": "Verification code sent", "expiresAt": result.expires_at}
    if result.code is not None:
        content["devOtp"] = result.code
    return JSONResponse(status_code=200, content=content)


@router.post("/verify-mobile-otp")
async def verify_mobile_otp(body: VerifyOtpBody, services: Services = Depends(get_services)) -> JSONResponse:
    verified = await services.verification.verify_code(body.mobile, body.otp)
    return JSONResponse(status_code=200, content={"success": True, "verified": verified})


@router.post("/skip-mobile-verification")
async def skip_mobile_verification(body: SendOtpBody, services: Services = Depends(get_services)) -> JSONResponse:
    """Development escape hatch; 403 when OTP_BYPASS_ENABLED is false."""
    await services.verification.bypass(body.mobile)
    return JSONResponse(status_code=200, content={"success": True, "verified": True, "bypassed": True})


@router.get("/mobile-verification-status")
async def mobile_verification_status(
    mobile: str = Query(default=""),
    services: Services = Depends(get_services),
) -> JSONResponse:
    session = await services.verification.session(mobile)
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "mobile": session.mobile,
            "state": session.state.value,
            "verified": session.state == VerificationState.VERIFIED,
        },
    )
