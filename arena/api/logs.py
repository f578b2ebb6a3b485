"""Admin access to the audit log."""

import csv
import io
import json
import logging
from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel

from arena import db
from arena.auth.router import get_arena, require_admin
from arena.models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/logs", tags=["logs"])

Level = Literal["info", "warning", "error"]

EXPORT_LIMIT = 10000
EXPORT_FIELDS = ["id", "created_at", "level", "event_type", "user_id", "challenge_id", "details"]


class CleanupRequest(BaseModel):
    # Defaults to the configured retention period
    cutoff: datetime | None = None


@router.get("")
def query_logs(
    event_type: str | None = None,
    user_id: int | None = None,
    challenge_id: str | None = None,
    level: Level | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    admin: User = Depends(require_admin),
):
    return db.get_events(
        event_type=event_type,
        user_id=user_id,
        challenge_id=challenge_id,
        level=level,
        since=since,
        until=until,
        limit=page_size,
        offset=(page - 1) * page_size,
    )


@router.get("/statistics")
def log_statistics(
    since: datetime | None = None,
    until: datetime | None = None,
    admin: User = Depends(require_admin),
):
    return db.event_statistics(since, until)


@router.get("/by-level/{level}")
def logs_by_level(
    level: Level, limit: int = Query(100, ge=1, le=1000), admin: User = Depends(require_admin)
):
    return db.get_events(level=level, limit=limit)


@router.get("/by-challenge/{challenge_id}")
def logs_by_challenge(
    challenge_id: str, limit: int = Query(100, ge=1, le=1000), admin: User = Depends(require_admin)
):
    return db.get_events(challenge_id=challenge_id, limit=limit)


@router.post("/cleanup")
def cleanup_logs(
    request: Request, payload: CleanupRequest | None = None, admin: User = Depends(require_admin)
):
    if payload is None or payload.cutoff is None:
        deleted = get_arena(request).cleanup_audit_log()
    else:
        deleted = db.delete_events_before(payload.cutoff)
    logger.info(f"Audit log cleanup by {admin.username} removed {deleted} events")
    db.log_event("AUDIT_LOG_CLEANUP", admin.id, details=f"deleted={deleted}")
    return {"deleted": deleted}


def events_to_csv(events: list[dict]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_FIELDS, extrasaction="ignore")
    writer.writeheader()
    writer.writerows(events)
    return buf.getvalue()


@router.get("/export")
def export_logs(
    request: Request,
    event_type: str | None = None,
    user_id: int | None = None,
    challenge_id: str | None = None,
    level: Level | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    format: Literal["json", "csv"] = "json",
    admin: User = Depends(require_admin),
):
    events = db.get_events(
        event_type=event_type,
        user_id=user_id,
        challenge_id=challenge_id,
        level=level,
        since=since,
        until=until,
        limit=EXPORT_LIMIT,
    )
    stamp = get_arena(request).clock().strftime("%Y%m%d_%H%M%S")
    if format == "csv":
        content, media_type = events_to_csv(events), "text/csv"
    else:
        content, media_type = json.dumps(events, indent=2), "application/json"

    headers = {"Content-Disposition": f'attachment; filename="logs_{stamp}.{format}"'}
    return Response(content=content, media_type=media_type, headers=headers)
