from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from arena import db
from arena.auth.router import get_arena, require_user
from arena.errors import ChallengeNotFound
from arena.models import Challenge, Outcome, SandboxLease, User

router = APIRouter(prefix="/challenges", tags=["challenges"])


class FlagRequest(BaseModel):
    flag: str


class ExtendRequest(BaseModel):
    minutes: int = Field(30, gt=0, le=240)


def challenge_view(challenge: Challenge) -> dict:
    # Never includes the expected secret
    return {
        "id": challenge.id,
        "title": challenge.title,
        "category": challenge.category,
        "description": challenge.description,
        "difficulty": challenge.difficulty.value,
        "base_points": challenge.base_points,
        "requires_sandbox": challenge.requires_sandbox,
        "solve_count": challenge.solve_count,
    }


def lease_view(lease: SandboxLease) -> dict:
    return {
        "id": lease.id,
        "endpoint": lease.endpoint,
        "expires_at": lease.expires_at.isoformat(),
        "extension_count": lease.extension_count,
        "status": lease.status.value,
    }


@router.get("")
def list_challenges(category: str | None = None):
    return [challenge_view(c) for c in db.list_challenges(category)]


@router.get("/categories")
def list_categories():
    return db.list_categories()


@router.get("/{challenge_id}")
def get_challenge(challenge_id: str):
    challenge = db.get_challenge(challenge_id)
    if not challenge or not challenge.is_active:
        raise ChallengeNotFound(challenge_id)
    return challenge_view(challenge)


@router.post("/{challenge_id}/open")
def open_challenge(challenge_id: str, request: Request, user: User = Depends(require_user)):
    challenge = get_arena(request).open_challenge(user.id, challenge_id)
    return challenge_view(challenge)


@router.post("/{challenge_id}/submit")
def submit_flag(
    challenge_id: str, payload: FlagRequest, request: Request, user: User = Depends(require_user)
):
    origin_ip = request.client.host if request.client else ""
    result = get_arena(request).submit_flag(user.id, challenge_id, payload.flag, origin_ip)

    body = {"outcome": result.outcome.value, "message": result.message}
    if result.outcome == Outcome.RATE_LIMITED:
        body["retry_after"] = result.retry_after
        return JSONResponse(body, status_code=429, headers={"Retry-After": str(result.retry_after)})
    if result.outcome == Outcome.CHALLENGE_NOT_FOUND:
        raise HTTPException(404, result.message)
    if result.outcome == Outcome.CORRECT:
        body["points"] = result.points
        body["first_blood"] = result.first_blood
    return body


@router.get("/{challenge_id}/sandbox")
def sandbox_status(challenge_id: str, request: Request, user: User = Depends(require_user)):
    arena = get_arena(request)
    lease = arena.sandboxes.get(challenge_id, user.id)
    now = arena.clock()
    if lease is None or lease.is_expired(now):
        raise HTTPException(404, "No sandbox found for this challenge")
    view = lease_view(lease)
    view["healthy"] = arena.sandboxes.is_healthy(challenge_id, user.id)
    view["seconds_remaining"] = int((lease.expires_at - now).total_seconds())
    return view


@router.post("/{challenge_id}/sandbox")
def start_sandbox(challenge_id: str, request: Request, user: User = Depends(require_user)):
    lease = get_arena(request).sandboxes.start(challenge_id, user.id)
    return lease_view(lease)


@router.delete("/{challenge_id}/sandbox")
def stop_sandbox(challenge_id: str, request: Request, user: User = Depends(require_user)):
    if not get_arena(request).sandboxes.stop(challenge_id, user.id):
        raise HTTPException(503, "Sandbox unavailable.")
    return {"stopped": True}


@router.post("/{challenge_id}/sandbox/extend")
def extend_sandbox(
    challenge_id: str, payload: ExtendRequest, request: Request, user: User = Depends(require_user)
):
    sandboxes = get_arena(request).sandboxes
    lease = sandboxes.extend(challenge_id, user.id, timedelta(minutes=payload.minutes))
    if lease is None:
        raise HTTPException(409, "Sandbox cannot be extended")
    return lease_view(lease)


@router.get("/{challenge_id}/sandbox/health")
def sandbox_health(challenge_id: str, request: Request, user: User = Depends(require_user)):
    return {"healthy": get_arena(request).sandboxes.is_healthy(challenge_id, user.id)}
