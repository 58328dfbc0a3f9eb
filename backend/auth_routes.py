import logging

from fastapi import APIRouter, Depends, Query, Request, Response

import config
from auth_service import AuthService, create_access_token
from dependencies import get_auth_service, get_current_user
from models import (
    ActivationRequest,
    ApiResponse,
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    User,
    UserOut,
)
from rate_limiter import ensure_rate_limit, extract_request_ip

logger = logging.getLogger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["Auth"])


async def _limit(request: Request, bucket: str) -> None:
    await ensure_rate_limit(extract_request_ip(request), bucket, config.AUTH_PER_MIN_LIMIT)


@auth_router.post("/register", response_model=ApiResponse[None])
async def register(
    payload: RegisterRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    await _limit(request, "auth_register")
    await auth_service.register_user(payload.username, payload.email, payload.password)
    return ApiResponse.ok(message="Registration successful. Please check your email for activation OTP.")


@auth_router.post("/login", response_model=ApiResponse[UserOut])
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    auth_service: AuthService = Depends(get_auth_service),
):
    await _limit(request, "auth_login")
    user = await auth_service.authenticate(payload.username_or_email, payload.password)
    token, _expires_at = create_access_token(user, config.JWT_SECRET, config.ACCESS_TOKEN_MINUTES)
    response.set_cookie(
        key=config.JWT_COOKIE_NAME,
        value=token,
        max_age=config.ACCESS_TOKEN_MINUTES * 60,
        httponly=True,
        secure=config.JWT_COOKIE_SECURE,
        samesite="lax",
        path="/api",
    )
    return ApiResponse.ok(data=UserOut.from_user(user), message="Login successful")


@auth_router.post("/logout", response_model=ApiResponse[None])
async def logout(response: Response):
    response.delete_cookie(key=config.JWT_COOKIE_NAME, path="/api")
    return ApiResponse.ok(message="You've been signed out!")


@auth_router.post("/activate", response_model=ApiResponse[None])
async def activate(
    payload: ActivationRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    await _limit(request, "auth_activate")
    await auth_service.activate_user(payload.token)
    return ApiResponse.ok(message="Account activated successfully")


@auth_router.post("/resend-activation", response_model=ApiResponse[None])
async def resend_activation(
    request: Request,
    email: str = Query(...),
    auth_service: AuthService = Depends(get_auth_service),
):
    await _limit(request, "auth_resend_activation")
    await auth_service.resend_activation_token(email)
    return ApiResponse.ok(message="Activation OTP sent successfully")


@auth_router.post("/forgot-password", response_model=ApiResponse[None])
async def forgot_password(
    payload: ForgotPasswordRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    await _limit(request, "auth_forgot_password")
    await auth_service.initiate_password_reset(payload.email)
    return ApiResponse.ok(message="Password reset OTP sent to your email")


@auth_router.post("/reset-password", response_model=ApiResponse[None])
async def reset_password(
    payload: ResetPasswordRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
):
    await _limit(request, "auth_reset_password")
    await auth_service.reset_password(payload.token, payload.new_password)
    return ApiResponse.ok(message="Password reset successfully")


@auth_router.get("/me", response_model=ApiResponse[UserOut])
async def me(current_user: User = Depends(get_current_user)):
    return ApiResponse.ok(data=UserOut.from_user(current_user))
