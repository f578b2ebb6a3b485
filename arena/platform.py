"""Wires the session, sandbox, flag and scoring components into one service."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from docker.errors import DockerException

from arena import db
from arena.auth.sessions import SessionRegistry
from arena.config import Settings, settings
from arena.ctf.docker_mgr import DockerManager
from arena.ctf.flags import FlagValidator
from arena.ctf.sandbox import SandboxLeaseManager
from arena.ctf.scoring import ScoreEngine
from arena.errors import ChallengeNotFound, ConsistencyError
from arena.locks import KeyedLocks
from arena.models import Challenge, Outcome, utcnow
from arena.sweeper import PeriodicTask

logger = logging.getLogger(__name__)

MESSAGES = {
    Outcome.CORRECT: "Correct flag! Well done!",
    Outcome.INCORRECT: "Incorrect flag. Try again!",
    Outcome.ALREADY_SOLVED: "Flag already submitted correctly.",
    Outcome.RATE_LIMITED: "Rate limit exceeded. Please wait before submitting again.",
    Outcome.CHALLENGE_NOT_FOUND: "Challenge not found.",
}


@dataclass
class FlagResult:
    outcome: Outcome
    message: str
    points: int | None = None
    first_blood: bool = False
    retry_after: int | None = None


def get_container_runtime() -> DockerManager | None:
    try:
        return DockerManager()
    except DockerException as e:
        logger.warning(f"Docker not available: {e}")
        return None


class Arena:
    def __init__(
        self,
        sessions: SessionRegistry,
        sandboxes: SandboxLeaseManager,
        validator: FlagValidator,
        scores: ScoreEngine,
        locks: KeyedLocks,
        user_locks: KeyedLocks | None = None,
        clock: Callable[[], datetime] = utcnow,
        session_sweep_seconds: float = 300,
        sandbox_sweep_seconds: float = 300,
        reconcile_seconds: float = 60,
        audit_retention: timedelta = timedelta(days=30),
        audit_cleanup_seconds: float = 86400,
    ):
        self.sessions = sessions
        self.sandboxes = sandboxes
        self.validator = validator
        self.scores = scores
        self.locks = locks
        self.user_locks = user_locks or validator.user_locks
        self.clock = clock
        self.audit_retention = audit_retention
        self.reconcile_task = PeriodicTask("award-reconcile", reconcile_seconds, scores.reconcile_pending)
        self.tasks = [
            PeriodicTask("session-sweep", session_sweep_seconds, sessions.sweep_expired),
            PeriodicTask("sandbox-sweep", sandbox_sweep_seconds, sandboxes.sweep_expired),
            self.reconcile_task,
            PeriodicTask("audit-cleanup", audit_cleanup_seconds, self.cleanup_audit_log),
        ]

    @classmethod
    def from_settings(
        cls, runtime=None, cfg: Settings = settings, clock: Callable[[], datetime] = utcnow
    ) -> "Arena":
        # Flag checks and awards for one (challenge, user) share these locks
        locks = KeyedLocks()
        user_locks = KeyedLocks()
        return cls(
            sessions=SessionRegistry(ttl=timedelta(hours=cfg.session_ttl_hours), clock=clock),
            sandboxes=SandboxLeaseManager(
                runtime,
                ttl=timedelta(minutes=cfg.sandbox_ttl_minutes),
                max_leases=cfg.sandbox_max_leases,
                max_lifetime=timedelta(minutes=cfg.sandbox_max_lifetime_minutes),
                default_port=cfg.sandbox_default_port,
                clock=clock,
            ),
            validator=FlagValidator(
                window=timedelta(seconds=cfg.rate_limit_window_seconds),
                max_submissions=cfg.rate_limit_max_submissions,
                max_flag_length=cfg.max_flag_length,
                clock=clock,
                locks=locks,
                user_locks=user_locks,
            ),
            scores=ScoreEngine(
                difficulty_multiplier=cfg.scoring_difficulty_multiplier,
                time_bonus=cfg.scoring_time_bonus,
                first_blood_ratio=cfg.first_blood_ratio,
                clock=clock,
                locks=locks,
            ),
            locks=locks,
            user_locks=user_locks,
            clock=clock,
            session_sweep_seconds=cfg.session_sweep_minutes * 60,
            sandbox_sweep_seconds=cfg.sandbox_sweep_minutes * 60,
            reconcile_seconds=cfg.award_reconcile_seconds,
            audit_retention=timedelta(days=cfg.audit_retention_days),
            audit_cleanup_seconds=cfg.audit_cleanup_hours * 3600,
        )

    def start(self):
        # Awards that failed before a restart are still pending in the store
        self.reconcile_task.run_once()
        for task in self.tasks:
            task.start()

    def shutdown(self):
        for task in self.tasks:
            task.stop()
        self.sandboxes.shutdown()
        self.sessions.clear()
        logger.info("Arena stopped")

    def cleanup_audit_log(self) -> int:
        """Drop audit events older than the retention period."""
        cutoff = self.clock() - self.audit_retention
        removed = db.delete_events_before(cutoff)
        if removed:
            logger.info(f"Removed {removed} audit events older than {cutoff}")
        return removed

    def open_challenge(self, user_id: int, challenge_id: str) -> Challenge:
        """Mark the moment a player first looked at a challenge."""
        challenge = db.get_challenge(challenge_id)
        if not challenge or not challenge.is_active:
            raise ChallengeNotFound(challenge_id)
        with db.get_connection() as conn:
            started = db.first_start(conn, challenge_id, user_id)
        if started is None:
            db.record_challenge_start(challenge_id, user_id, self.clock())
        return challenge

    def submit_flag(
        self, user_id: int, challenge_id: str, candidate: str, origin_ip: str = ""
    ) -> FlagResult:
        # Held across validate and award so duplicate submits cannot both score.
        # User lock first, matching the order the validator takes them in.
        with self.user_locks.hold(user_id), self.locks.hold((challenge_id, user_id)):
            result = self.validator.validate(challenge_id, user_id, candidate, origin_ip)
            flag_result = FlagResult(
                outcome=result.outcome,
                message=MESSAGES[result.outcome],
                retry_after=result.retry_after,
            )
            if result.outcome != Outcome.CORRECT:
                return flag_result

            try:
                award = self.scores.award_solve(result.challenge, result.submission)
            except ConsistencyError:
                # Submission is recorded as correct; reconciliation retries the award
                logger.error(f"Award for user {user_id} on {challenge_id} queued for reconciliation")
                return flag_result

            if award is not None:
                flag_result.points = award.points
                flag_result.first_blood = award.first_blood
            return flag_result
