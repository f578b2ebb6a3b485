from dataclasses import asdict

from fastapi import APIRouter, Query, Request

from arena.auth.router import get_arena

router = APIRouter(tags=["scoreboard"])


@router.get("/scoreboard")
def scoreboard(request: Request, top: int = Query(100, ge=1, le=1000)):
    entries = get_arena(request).scores.leaderboard(top)
    return [asdict(e) for e in entries]


@router.get("/scoreboard/{category}")
def category_scoreboard(category: str, request: Request, top: int = Query(50, ge=1, le=1000)):
    entries = get_arena(request).scores.leaderboard_by_category(category, top)
    return [asdict(e) for e in entries]


@router.get("/users/{user_id}/stats")
def user_stats(user_id: int, request: Request):
    return asdict(get_arena(request).scores.user_stats(user_id))
