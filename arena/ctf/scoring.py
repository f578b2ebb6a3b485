"""Point computation, the exactly-once award commit, and leaderboards."""

import logging
import math
import sqlite3
from collections import defaultdict
from datetime import datetime
from typing import Callable

from arena import db
from arena.errors import ConsistencyError
from arena.locks import KeyedLocks
from arena.models import (
    Challenge,
    Difficulty,
    LeaderboardEntry,
    ScoreAward,
    Submission,
    UserStats,
    utcnow,
)

logger = logging.getLogger(__name__)

# Share of base points available as a time bonus, and the window it decays over
MAX_TIME_BONUS_RATIO = 0.5
TIME_BONUS_WINDOW_MINUTES = 60

TIME_BONUS_MODIFIERS = {
    Difficulty.EASY: 0.5,
    Difficulty.MEDIUM: 1.0,
    Difficulty.HARD: 1.5,
    Difficulty.EXPERT: 2.0,
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ScoreEngine:
    def __init__(
        self,
        difficulty_multiplier: float = 1.5,
        time_bonus: bool = True,
        first_blood_ratio: float = 0.1,
        clock: Callable[[], datetime] = utcnow,
        locks: KeyedLocks | None = None,
    ):
        self.medium_multiplier = difficulty_multiplier
        self.time_bonus_enabled = time_bonus
        self.first_blood_ratio = first_blood_ratio
        self.clock = clock
        self.locks = locks or KeyedLocks()

    def difficulty_multiplier(self, tier: Difficulty) -> float:
        return {
            Difficulty.EASY: 1.0,
            Difficulty.MEDIUM: self.medium_multiplier,
            Difficulty.HARD: self.medium_multiplier * 2,
            Difficulty.EXPERT: self.medium_multiplier * 3,
        }.get(tier, 1.0)

    def time_bonus(self, challenge: Challenge, started_at: datetime, solved_at: datetime) -> int:
        minutes = max(0.0, (solved_at - started_at).total_seconds() / 60)
        ratio = max(0.0, 1 - minutes / TIME_BONUS_WINDOW_MINUTES)
        modifier = TIME_BONUS_MODIFIERS.get(challenge.difficulty, 1.0)
        return round_half_up(MAX_TIME_BONUS_RATIO * challenge.base_points * ratio * modifier)

    def components(
        self,
        challenge: Challenge,
        solved_at: datetime,
        started_at: datetime | None,
        first_blood: bool,
    ) -> tuple[int, int, int, int]:
        """Return (difficulty score, time bonus, first-blood bonus, total).

        Difficulty and time parts round half-up; the first-blood bonus is
        floored. The total is never below 1.
        """
        difficulty_score = round_half_up(
            challenge.base_points * self.difficulty_multiplier(challenge.difficulty)
        )

        time_bonus = 0
        if self.time_bonus_enabled and started_at is not None:
            time_bonus = self.time_bonus(challenge, started_at, solved_at)

        running = difficulty_score + time_bonus
        first_blood_bonus = math.floor(running * self.first_blood_ratio) if first_blood else 0
        return difficulty_score, time_bonus, first_blood_bonus, max(1, running + first_blood_bonus)

    def compute_score(
        self, challenge: Challenge, solved_at: datetime, started_at: datetime | None = None
    ) -> int:
        with db.get_connection() as conn:
            first_blood = not db.has_earlier_correct(conn, challenge.id, solved_at)
        if first_blood:
            logger.info(f"First blood bonus applies for challenge {challenge.id}")
        return self.components(challenge, solved_at, started_at, first_blood)[3]

    def award_solve(self, challenge: Challenge, submission: Submission) -> ScoreAward | None:
        """Score and commit a correct submission in one transaction.

        Returns None when the (challenge, user) key already carries an award.
        Raises ConsistencyError when the commit fails or the submission is not
        the key's earliest correct one; nothing is applied in that case and
        `reconcile_pending` picks the solve up again.
        """
        user_id = submission.user_id
        with self.locks.hold((challenge.id, user_id)):
            try:
                with db.transaction() as conn:
                    target = db.first_unawarded_correct(conn, challenge.id, user_id)
                    if target is None:
                        return None
                    if target.id != submission.id:
                        raise ConsistencyError(
                            f"Submission {submission.id} is not the earliest correct one ({target.id})"
                        )

                    started_at = db.first_start(conn, challenge.id, user_id)
                    if started_at is not None and started_at > target.submitted_at:
                        started_at = None
                    first_blood = not db.has_earlier_correct(
                        conn, challenge.id, target.submitted_at, target.id
                    )
                    difficulty_score, time_bonus, fb_bonus, points = self.components(
                        challenge, target.submitted_at, started_at, first_blood
                    )
                    awarded_at = self.clock()
                    self._commit(conn, target, points, first_blood, awarded_at)
            except ConsistencyError as e:
                self._award_failed(user_id, challenge.id, e)
                raise
            except sqlite3.Error as e:
                self._award_failed(user_id, challenge.id, e)
                raise ConsistencyError(str(e)) from e

        award = ScoreAward(
            user_id=user_id,
            challenge_id=challenge.id,
            submission_id=target.id,
            difficulty_score=difficulty_score,
            time_bonus=time_bonus,
            first_blood_bonus=fb_bonus,
            points=points,
            first_blood=first_blood,
            awarded_at=awarded_at,
        )
        logger.info(
            f"Awarded {points} points to user {user_id} for challenge {challenge.id}"
            + (" (first blood)" if first_blood else "")
        )
        db.log_event(
            "POINTS_AWARDED",
            user_id,
            challenge.id,
            f"points={points}, submission={target.id}, first_blood={first_blood}",
        )
        return award

    def award_points(self, user_id: int, challenge_id: str, points: int) -> bool:
        """Atomically credit `points` for the user's first correct submission."""
        with self.locks.hold((challenge_id, user_id)):
            try:
                with db.transaction() as conn:
                    target = db.first_unawarded_correct(conn, challenge_id, user_id)
                    if target is None:
                        logger.warning(f"No unawarded solve for user {user_id} on {challenge_id}")
                        return False
                    self._commit(conn, target, points, False, self.clock())
            except (sqlite3.Error, ConsistencyError) as e:
                self._award_failed(user_id, challenge_id, e)
                return False

        logger.info(f"Awarded {points} points to user {user_id} for challenge {challenge_id}")
        db.log_event("POINTS_AWARDED", user_id, challenge_id, f"points={points}, submission={target.id}")
        return True

    def _commit(self, conn, target: Submission, points: int, first_blood: bool, awarded_at: datetime):
        if not db.commit_award(
            conn, target.id, target.user_id, target.challenge_id, points, first_blood, awarded_at
        ):
            raise ConsistencyError(f"Submission {target.id} was awarded concurrently")

    def _award_failed(self, user_id: int, challenge_id: str, error: Exception):
        logger.error(f"Error awarding points to user {user_id} for challenge {challenge_id}: {error}")
        db.log_event("AWARD_FAILED", user_id, challenge_id, str(error), level="error")

    def reconcile_pending(self) -> int:
        """Award every correct solve that is still missing its points."""
        awarded = 0
        for submission in db.unawarded_solves():
            challenge = db.get_challenge(submission.challenge_id)
            if challenge is None:
                logger.warning(f"Skipping award for unknown challenge {submission.challenge_id}")
                continue
            try:
                if self.award_solve(challenge, submission):
                    awarded += 1
            except ConsistencyError:
                continue
        if awarded:
            logger.info(f"Reconciled {awarded} pending awards")
        return awarded

    def leaderboard(self, top: int = 100) -> list[LeaderboardEntry]:
        return [
            LeaderboardEntry(
                user_id=r["user_id"],
                username=r["username"],
                total_points=r["total_points"],
                solved_count=r["solved_count"],
                last_solved_at=db.from_ts(r["last_solved_at"]),
            )
            for r in db.leaderboard_rows(top)
        ]

    def leaderboard_by_category(self, category: str, top: int = 50) -> list[LeaderboardEntry]:
        return [
            LeaderboardEntry(
                user_id=r["user_id"],
                username=r["username"],
                total_points=r["total_points"],
                solved_count=r["solved_count"],
                last_solved_at=db.from_ts(r["last_solved_at"]),
                category=category,
            )
            for r in db.category_leaderboard_rows(category, top)
        ]

    def user_stats(self, user_id: int) -> UserStats:
        solved = db.solved_challenges(user_id)
        stats = UserStats(
            user_id=user_id,
            total_points=sum(s["points"] for s in solved),
            solved_count=len(solved),
            last_solved_at=max((s["solved_at"] for s in solved), default=None),
        )

        # -1 means no limit in SQLite
        for rank, entry in enumerate(self.leaderboard(top=-1), start=1):
            if entry.user_id == user_id:
                stats.rank = rank
                break

        by_category: dict[str, dict] = defaultdict(lambda: {"solved_count": 0, "total_points": 0})
        for s in solved:
            by_category[s["category"]]["solved_count"] += 1
            by_category[s["category"]]["total_points"] += s["points"]
        stats.categories = sorted(
            ({"category": c, **v} for c, v in by_category.items()),
            key=lambda c: c["total_points"],
            reverse=True,
        )

        durations = [
            (s["solved_at"] - s["started_at"]).total_seconds()
            for s in solved
            if s["started_at"] is not None
        ]
        if durations:
            stats.average_solve_seconds = sum(durations) / len(durations)
        return stats
