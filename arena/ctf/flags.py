"""Flag checking with fixed-time comparison and a sliding-window rate limit."""

import hashlib
import hmac
import logging
import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from arena import db
from arena.locks import KeyedLocks
from arena.models import Challenge, Outcome, SecretEncoding, Submission, utcnow

logger = logging.getLogger(__name__)

HASH_ALGORITHMS = {
    SecretEncoding.MD5: "md5",
    SecretEncoding.SHA256: "sha256",
}


@dataclass
class ValidationResult:
    outcome: Outcome
    challenge: Challenge | None = None
    submission: Submission | None = None
    retry_after: int | None = None


def secure_equals(expected: str, candidate: str) -> bool:
    """Compare two strings in time independent of where they differ.

    Only the length is allowed to leak: inputs of different byte length are
    rejected before any content is compared.
    """
    a = expected.encode()
    b = candidate.encode()
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)


def hex_digest(value: str, algorithm: str) -> str:
    return hashlib.new(algorithm, value.encode()).hexdigest()


def flag_matches(challenge: Challenge, candidate: str) -> bool:
    if not candidate or not challenge.expected_secret:
        return False

    encoding = challenge.secret_encoding
    if encoding == SecretEncoding.PLAIN:
        return secure_equals(challenge.expected_secret, candidate)

    if encoding in HASH_ALGORITHMS:
        submitted = hex_digest(candidate, HASH_ALGORITHMS[encoding])
        return secure_equals(challenge.expected_secret.strip().lower(), submitted)

    if encoding == SecretEncoding.REGEX:
        try:
            return re.search(challenge.expected_secret, candidate) is not None
        except re.error as e:
            logger.error(f"Invalid flag pattern configured for challenge {challenge.id}: {e}")
            return False

    logger.error(f"Unknown secret encoding {encoding!r} for challenge {challenge.id}")
    return False


class FlagValidator:
    def __init__(
        self,
        window: timedelta = timedelta(seconds=60),
        max_submissions: int = 10,
        max_flag_length: int = 1024,
        clock: Callable[[], datetime] = utcnow,
        locks: KeyedLocks | None = None,
        user_locks: KeyedLocks | None = None,
    ):
        self.window = window
        self.max_submissions = max_submissions
        self.max_flag_length = max_flag_length
        self.clock = clock
        self.locks = locks or KeyedLocks()
        # The rate limit counts across challenges, so count and insert are per user
        self.user_locks = user_locks or KeyedLocks()

    def retry_after(self, user_id: int) -> int | None:
        """Seconds until the user may submit again, or None if not limited."""
        now = self.clock()
        recent = db.recent_submission_times(user_id, now - self.window)
        if len(recent) < self.max_submissions:
            return None
        # The window frees up once enough old attempts have aged out
        oldest_blocking = recent[len(recent) - self.max_submissions]
        wait = (oldest_blocking + self.window - now).total_seconds()
        return max(1, math.ceil(wait))

    def validate(
        self, challenge_id: str, user_id: int, candidate: str, origin_ip: str = ""
    ) -> ValidationResult:
        with self.user_locks.hold(user_id), self.locks.hold((challenge_id, user_id)):
            retry = self.retry_after(user_id)
            if retry is not None:
                logger.warning(f"Rate limit exceeded for user {user_id}")
                db.log_event(
                    "FLAG_SUBMISSION_RATE_LIMITED", user_id, challenge_id, f"retry_after={retry}", level="warning"
                )
                return ValidationResult(Outcome.RATE_LIMITED, retry_after=retry)

            challenge = db.get_challenge(challenge_id)
            if not challenge or not challenge.is_active:
                logger.warning(f"Challenge not found: {challenge_id}")
                return ValidationResult(Outcome.CHALLENGE_NOT_FOUND)

            if db.has_correct_submission(challenge_id, user_id):
                return ValidationResult(Outcome.ALREADY_SOLVED, challenge=challenge)

            candidate = candidate or ""
            if len(candidate) > self.max_flag_length:
                is_correct = False
                candidate = candidate[: self.max_flag_length]
            else:
                is_correct = flag_matches(challenge, candidate)

            submission = db.insert_submission(
                challenge_id, user_id, candidate, is_correct, self.clock(), origin_ip
            )

            if is_correct:
                logger.info(f"Correct flag submitted for challenge {challenge_id} by user {user_id}")
                db.log_event("FLAG_SUBMISSION_CORRECT", user_id, challenge_id, f"submission={submission.id}")
                return ValidationResult(Outcome.CORRECT, challenge=challenge, submission=submission)

            logger.info(f"Incorrect flag submitted for challenge {challenge_id} by user {user_id}")
            db.log_event("FLAG_SUBMISSION_INCORRECT", user_id, challenge_id, f"submission={submission.id}")
            return ValidationResult(Outcome.INCORRECT, challenge=challenge, submission=submission)
