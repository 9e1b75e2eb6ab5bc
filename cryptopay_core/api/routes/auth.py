"""Registration and login routes."""

from fastapi import APIRouter, Depends

from cryptopay_core.api.dependencies import get_authenticator, get_current_identity
from cryptopay_core.api.responses import ok
from cryptopay_core.api.schemas import LoginRequest, RegisterRequest
from cryptopay_core.auth import Authenticator
from cryptopay_core.models import Identity

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", summary="Register a user with an optional wallet address")
async def register(
    body: RegisterRequest,
    authenticator: Authenticator = Depends(get_authenticator),
):
    identity = authenticator.register(body.email, body.password, body.wallet_address)
    token = authenticator.issue_token(identity)
    return ok(
        "User registered successfully",
        {"user": identity.to_public_dict(), "token": token},
        status_code=201,
    )


@router.post("/login", summary="Exchange credentials for a bearer token")
async def login(
    body: LoginRequest,
    authenticator: Authenticator = Depends(get_authenticator),
):
    token = authenticator.authenticate(body.email, body.password)
    identity = authenticator.resolve(token)
    return ok("Login successful", {"user": identity.to_public_dict(), "token": token})


@router.get("/me")
async def me(identity: Identity = Depends(get_current_identity)):
    return ok("Current user", {"user": identity.to_public_dict()})
