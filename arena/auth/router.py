from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel

from arena.auth.accounts import MIN_PASSWORD_LENGTH, change_password, register_user
from arena.auth.utils import MAX_PASSWORD_BYTES, password_too_long
from arena.models import User

router = APIRouter(prefix="/auth", tags=["auth"])

SESSION_COOKIE = "token"


class RegisterRequest(BaseModel):
    username: str
    email: str
    password: str
    password_confirm: str


class LoginRequest(BaseModel):
    username: str
    password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


def get_arena(request: Request):
    return request.app.state.arena


def get_token(request: Request) -> str | None:
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


def get_current_user(request: Request) -> User | None:
    token = get_token(request)
    if not token:
        return None
    return get_arena(request).sessions.resolve(token)


def require_user(user: User | None = Depends(get_current_user)) -> User:
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def require_admin(user: User = Depends(require_user)) -> User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


@router.post("/register", status_code=201)
def register(payload: RegisterRequest):
    if payload.password != payload.password_confirm:
        raise HTTPException(400, "Passwords do not match")
    user_id = register_user(payload.username, payload.email, payload.password)
    return {"id": user_id, "username": payload.username}


@router.post("/login")
def login(payload: LoginRequest, request: Request, response: Response):
    origin_ip = request.client.host if request.client else ""
    session = get_arena(request).sessions.authenticate(payload.username, payload.password, origin_ip)
    max_age = int((session.expires_at - session.created_at).total_seconds())
    response.set_cookie(SESSION_COOKIE, session.token, httponly=True, samesite="lax", max_age=max_age)
    return {"token": session.token, "expires_at": session.expires_at.isoformat()}


@router.post("/logout")
def logout(request: Request, response: Response):
    token = get_token(request)
    revoked = get_arena(request).sessions.revoke(token) if token else False
    response.delete_cookie(SESSION_COOKIE)
    return {"revoked": revoked}


@router.get("/me")
def me(user: User = Depends(require_user)):
    return {
        "id": user.id,
        "username": user.username,
        "total_points": user.total_points,
        "solved_count": user.solved_count,
    }


@router.post("/change-password")
def change_password_route(payload: ChangePasswordRequest, user: User = Depends(require_user)):
    if len(payload.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"New password must be at least {MIN_PASSWORD_LENGTH} characters")
    if password_too_long(payload.new_password):
        raise HTTPException(400, f"New password must be at most {MAX_PASSWORD_BYTES} bytes")
    if not change_password(user.id, payload.current_password, payload.new_password):
        raise HTTPException(400, "Current password is incorrect")
    return {"message": "Password changed successfully"}
