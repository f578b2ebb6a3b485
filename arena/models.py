from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SecretEncoding(str, Enum):
    PLAIN = "plain"
    MD5 = "md5"
    SHA256 = "sha256"
    REGEX = "regex"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EXPERT = "expert"


class LeaseStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    EXPIRED = "expired"
    ERROR = "error"


class Outcome(str, Enum):
    CORRECT = "correct"
    INCORRECT = "incorrect"
    ALREADY_SOLVED = "already_solved"
    RATE_LIMITED = "rate_limited"
    CHALLENGE_NOT_FOUND = "challenge_not_found"


@dataclass
class User:
    id: int
    username: str
    email: str
    password_hash: str
    created_at: datetime
    is_active: bool = True
    role: str = "user"
    total_points: int = 0
    solved_count: int = 0
    last_login_at: Optional[datetime] = None


@dataclass
class Challenge:
    id: str
    title: str
    expected_secret: str
    secret_encoding: SecretEncoding = SecretEncoding.PLAIN
    difficulty: Difficulty = Difficulty.EASY
    base_points: int = 100
    category: str = "misc"
    description: str = ""
    requires_sandbox: bool = False
    sandbox_image: Optional[str] = None
    sandbox_port: Optional[int] = None
    solve_count: int = 0
    is_active: bool = True


@dataclass
class Session:
    token: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    origin_ip: str = ""

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class Submission:
    id: int
    challenge_id: str
    user_id: int
    submitted_value: str
    is_correct: bool
    submitted_at: datetime
    origin_ip: str = ""
    points_awarded: Optional[int] = None
    awarded_at: Optional[datetime] = None
    first_blood: bool = False


@dataclass
class SandboxLease:
    id: str
    challenge_id: str
    user_id: int
    container_ref: str
    endpoint: str
    created_at: datetime
    expires_at: datetime
    extension_count: int = 0
    status: LeaseStatus = LeaseStatus.RUNNING
    stopped_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.challenge_id, self.user_id)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class SandboxStatistics:
    active: int = 0
    expired_pending: int = 0
    by_challenge: dict[str, int] = field(default_factory=dict)
    by_user: dict[int, int] = field(default_factory=dict)


@dataclass
class ScoreAward:
    user_id: int
    challenge_id: str
    submission_id: int
    difficulty_score: int
    time_bonus: int
    first_blood_bonus: int
    points: int
    first_blood: bool
    awarded_at: Optional[datetime] = None


@dataclass
class LeaderboardEntry:
    user_id: int
    username: str
    total_points: int
    solved_count: int
    last_solved_at: Optional[datetime] = None
    category: Optional[str] = None


@dataclass
class UserStats:
    user_id: int
    total_points: int = 0
    solved_count: int = 0
    rank: int = -1
    last_solved_at: Optional[datetime] = None
    average_solve_seconds: float = 0.0
    categories: list[dict] = field(default_factory=list)
