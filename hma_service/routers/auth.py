"""
Authentication routes
POST /api/auth/login       - obtain a JWT
GET  /api/auth/me          - current user
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Header, status
from pydantic import BaseModel

from hma_service.models.response import ApiResponse
from hma_service.services.auth_service import get_auth_service

router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


# ── Dependency: current user from the Bearer token ───────

async def get_current_user(
    authorization: Optional[str] = Header(default=None),
) -> dict:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization[7:]
    token_data = get_auth_service().verify_token(token)
    if token_data is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    return {"username": token_data.sub}


# ── Handlers ─────────────────────────────────────────────

@router.post("/login", response_model=ApiResponse)
async def login(body: LoginRequest):
    svc = get_auth_service()
    user = svc.authenticate(body.username, body.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Wrong username or password")
    token = svc.create_access_token(user["username"])
    return ApiResponse.ok(
        data={"access_token": token, "token_type": "bearer"},
        message="Logged in",
    )


@router.get("/me", response_model=ApiResponse)
async def me(current_user: dict = Depends(get_current_user)):
    return ApiResponse.ok(data=current_user)
