import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from arena.config import settings
from arena.models import (
    Challenge,
    Difficulty,
    SecretEncoding,
    Submission,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

DB_PATH = Path(settings.database_path)

# Fixed-width UTC timestamps so that text comparison in SQL matches time order
TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def to_ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(TS_FORMAT)


def from_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.strptime(value, TS_FORMAT).replace(tzinfo=timezone.utc)


def get_db_path() -> Path:
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    return DB_PATH


def init_db():
    """Create tables if they don't exist."""
    with get_connection() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT UNIQUE NOT NULL,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                role TEXT NOT NULL DEFAULT 'user',
                total_points INTEGER NOT NULL DEFAULT 0,
                solved_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                last_login_at TEXT
            );

            CREATE TABLE IF NOT EXISTS challenges (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT 'misc',
                description TEXT,
                expected_secret TEXT NOT NULL,
                secret_encoding TEXT NOT NULL DEFAULT 'plain',
                difficulty TEXT NOT NULL DEFAULT 'easy',
                base_points INTEGER NOT NULL DEFAULT 100,
                requires_sandbox INTEGER NOT NULL DEFAULT 0,
                sandbox_image TEXT,
                sandbox_port INTEGER,
                solve_count INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS submissions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                challenge_id TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                submitted_value TEXT NOT NULL,
                is_correct INTEGER NOT NULL DEFAULT 0,
                submitted_at TEXT NOT NULL,
                origin_ip TEXT NOT NULL DEFAULT '',
                points_awarded INTEGER,
                awarded_at TEXT,
                first_blood INTEGER NOT NULL DEFAULT 0,
                FOREIGN KEY (challenge_id) REFERENCES challenges(id),
                FOREIGN KEY (user_id) REFERENCES users(id)
            );

            -- At most one awarded submission per (challenge, user)
            CREATE UNIQUE INDEX IF NOT EXISTS idx_submissions_one_award
                ON submissions(challenge_id, user_id) WHERE points_awarded IS NOT NULL;
            CREATE INDEX IF NOT EXISTS idx_submissions_user_time
                ON submissions(user_id, submitted_at);
            CREATE INDEX IF NOT EXISTS idx_submissions_challenge_correct
                ON submissions(challenge_id, is_correct, submitted_at);

            CREATE TABLE IF NOT EXISTS challenge_starts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                challenge_id TEXT NOT NULL,
                user_id INTEGER NOT NULL,
                started_at TEXT NOT NULL,
                stopped_at TEXT,
                container_ref TEXT,
                FOREIGN KEY (challenge_id) REFERENCES challenges(id),
                FOREIGN KEY (user_id) REFERENCES users(id)
            );

            CREATE INDEX IF NOT EXISTS idx_challenge_starts_key
                ON challenge_starts(challenge_id, user_id);

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                user_id INTEGER,
                challenge_id TEXT,
                details TEXT,
                level TEXT NOT NULL DEFAULT 'info',
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_log_type ON audit_log(event_type);
            CREATE INDEX IF NOT EXISTS idx_audit_log_created ON audit_log(created_at);
        """)


@contextmanager
def get_connection():
    conn = sqlite3.connect(get_db_path(), timeout=settings.db_timeout_seconds)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def transaction():
    """Write transaction that takes the database lock before the first read."""
    conn = sqlite3.connect(
        get_db_path(), timeout=settings.db_timeout_seconds, isolation_level=None
    )
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def _row_to_user(row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        created_at=from_ts(row["created_at"]),
        is_active=bool(row["is_active"]),
        role=row["role"],
        total_points=row["total_points"],
        solved_count=row["solved_count"],
        last_login_at=from_ts(row["last_login_at"]),
    )


def _row_to_challenge(row) -> Challenge:
    return Challenge(
        id=row["id"],
        title=row["title"],
        category=row["category"],
        description=row["description"] or "",
        expected_secret=row["expected_secret"],
        secret_encoding=SecretEncoding(row["secret_encoding"]),
        difficulty=Difficulty(row["difficulty"]),
        base_points=row["base_points"],
        requires_sandbox=bool(row["requires_sandbox"]),
        sandbox_image=row["sandbox_image"],
        sandbox_port=row["sandbox_port"],
        solve_count=row["solve_count"],
        is_active=bool(row["is_active"]),
    )


def _row_to_submission(row) -> Submission:
    return Submission(
        id=row["id"],
        challenge_id=row["challenge_id"],
        user_id=row["user_id"],
        submitted_value=row["submitted_value"],
        is_correct=bool(row["is_correct"]),
        submitted_at=from_ts(row["submitted_at"]),
        origin_ip=row["origin_ip"],
        points_awarded=row["points_awarded"],
        awarded_at=from_ts(row["awarded_at"]),
        first_blood=bool(row["first_blood"]),
    )


# User helpers
def create_user(username: str, email: str, password_hash: str, role: str = "user") -> int:
    with get_connection() as conn:
        cursor = conn.execute(
            """INSERT INTO users (username, email, password_hash, role, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (username, email, password_hash, role, to_ts(utcnow())),
        )
        return cursor.lastrowid


def get_user_by_id(user_id: int) -> User | None:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row else None


def get_user_by_username(username: str) -> User | None:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
    return _row_to_user(row) if row else None


def get_user_by_email(email: str) -> User | None:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    return _row_to_user(row) if row else None


def update_last_login(user_id: int, when: datetime):
    with get_connection() as conn:
        conn.execute(
            "UPDATE users SET last_login_at = ? WHERE id = ?", (to_ts(when), user_id)
        )


def update_password(user_id: int, password_hash: str):
    with get_connection() as conn:
        conn.execute(
            "UPDATE users SET password_hash = ? WHERE id = ?", (password_hash, user_id)
        )


def set_user_active(user_id: int, active: bool):
    with get_connection() as conn:
        conn.execute("UPDATE users SET is_active = ? WHERE id = ?", (int(active), user_id))


def set_user_role(user_id: int, role: str):
    with get_connection() as conn:
        conn.execute("UPDATE users SET role = ? WHERE id = ?", (role, user_id))


# Challenge helpers
def upsert_challenge(challenge: Challenge):
    """Insert or replace a catalog entry, keeping its solve count."""
    with get_connection() as conn:
        conn.execute(
            """
            INSERT INTO challenges
                (id, title, category, description, expected_secret, secret_encoding,
                 difficulty, base_points, requires_sandbox, sandbox_image, sandbox_port,
                 is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                title = excluded.title,
                category = excluded.category,
                description = excluded.description,
                expected_secret = excluded.expected_secret,
                secret_encoding = excluded.secret_encoding,
                difficulty = excluded.difficulty,
                base_points = excluded.base_points,
                requires_sandbox = excluded.requires_sandbox,
                sandbox_image = excluded.sandbox_image,
                sandbox_port = excluded.sandbox_port,
                is_active = excluded.is_active
            """,
            (
                challenge.id,
                challenge.title,
                challenge.category,
                challenge.description,
                challenge.expected_secret,
                challenge.secret_encoding.value,
                challenge.difficulty.value,
                challenge.base_points,
                int(challenge.requires_sandbox),
                challenge.sandbox_image,
                challenge.sandbox_port,
                int(challenge.is_active),
            ),
        )


def get_challenge(challenge_id: str) -> Challenge | None:
    with get_connection() as conn:
        row = conn.execute("SELECT * FROM challenges WHERE id = ?", (challenge_id,)).fetchone()
    return _row_to_challenge(row) if row else None


def list_challenges(category: str | None = None) -> list[Challenge]:
    """Active challenges, optionally limited to one category."""
    query = "SELECT * FROM challenges WHERE is_active = 1"
    params: list = []
    if category:
        query += " AND category = ?"
        params.append(category)
    query += " ORDER BY category, base_points, id"
    with get_connection() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_challenge(r) for r in rows]


def list_categories() -> list[str]:
    with get_connection() as conn:
        rows = conn.execute(
            "SELECT DISTINCT category FROM challenges WHERE is_active = 1 ORDER BY category"
        ).fetchall()
    return [r["category"] for r in rows]


# Submission helpers
def insert_submission(
    challenge_id: str,
    user_id: int,
    submitted_value: str,
    is_correct: bool,
    submitted_at: datetime,
    origin_ip: str = "",
) -> Submission:
    with get_connection() as conn:
        cursor = conn.execute(
            """INSERT INTO submissions
               (challenge_id, user_id, submitted_value, is_correct, submitted_at, origin_ip)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (challenge_id, user_id, submitted_value, int(is_correct), to_ts(submitted_at), origin_ip),
        )
        submission_id = cursor.lastrowid
    return Submission(
        id=submission_id,
        challenge_id=challenge_id,
        user_id=user_id,
        submitted_value=submitted_value,
        is_correct=is_correct,
        submitted_at=submitted_at,
        origin_ip=origin_ip,
    )


def recent_submission_times(user_id: int, since: datetime) -> list[datetime]:
    """Submission times for a user at or after `since`, oldest first."""
    with get_connection() as conn:
        rows = conn.execute(
            """SELECT submitted_at FROM submissions
               WHERE user_id = ? AND submitted_at >= ?
               ORDER BY submitted_at""",
            (user_id, to_ts(since)),
        ).fetchall()
    return [from_ts(r["submitted_at"]) for r in rows]


def has_correct_submission(challenge_id: str, user_id: int) -> bool:
    with get_connection() as conn:
        row = conn.execute(
            """SELECT 1 FROM submissions
               WHERE challenge_id = ? AND user_id = ? AND is_correct = 1 LIMIT 1""",
            (challenge_id, user_id),
        ).fetchone()
    return row is not None


def get_submissions(challenge_id: str | None = None, user_id: int | None = None) -> list[Submission]:
    query = "SELECT * FROM submissions WHERE 1 = 1"
    params: list = []
    if challenge_id is not None:
        query += " AND challenge_id = ?"
        params.append(challenge_id)
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    query += " ORDER BY submitted_at, id"
    with get_connection() as conn:
        rows = conn.execute(query, params).fetchall()
    return [_row_to_submission(r) for r in rows]


def has_earlier_correct(
    conn, challenge_id: str, before: datetime, submission_id: int | None = None
) -> bool:
    """True if another correct submission for the challenge precedes `before`.

    Submissions sharing the exact timestamp are ordered by id.
    """
    ts = to_ts(before)
    if submission_id is None:
        row = conn.execute(
            """SELECT 1 FROM submissions
               WHERE challenge_id = ? AND is_correct = 1 AND submitted_at < ? LIMIT 1""",
            (challenge_id, ts),
        ).fetchone()
    else:
        row = conn.execute(
            """SELECT 1 FROM submissions
               WHERE challenge_id = ? AND is_correct = 1 AND id != ?
                 AND (submitted_at < ? OR (submitted_at = ? AND id < ?))
               LIMIT 1""",
            (challenge_id, submission_id, ts, ts, submission_id),
        ).fetchone()
    return row is not None


def first_unawarded_correct(conn, challenge_id: str, user_id: int) -> Submission | None:
    """Earliest correct submission for the key, if the key has no award yet."""
    row = conn.execute(
        """SELECT * FROM submissions s
           WHERE s.challenge_id = ? AND s.user_id = ? AND s.is_correct = 1
             AND NOT EXISTS (
                 SELECT 1 FROM submissions a
                 WHERE a.challenge_id = s.challenge_id AND a.user_id = s.user_id
                   AND a.points_awarded IS NOT NULL)
           ORDER BY s.submitted_at, s.id
           LIMIT 1""",
        (challenge_id, user_id),
    ).fetchone()
    return _row_to_submission(row) if row else None


def unawarded_solves() -> list[Submission]:
    """Earliest correct submission of every key that still lacks an award."""
    with get_connection() as conn:
        rows = conn.execute(
            """SELECT * FROM submissions s
               WHERE s.is_correct = 1
                 AND NOT EXISTS (
                     SELECT 1 FROM submissions a
                     WHERE a.challenge_id = s.challenge_id AND a.user_id = s.user_id
                       AND a.points_awarded IS NOT NULL)
                 AND NOT EXISTS (
                     SELECT 1 FROM submissions e
                     WHERE e.challenge_id = s.challenge_id AND e.user_id = s.user_id
                       AND e.is_correct = 1
                       AND (e.submitted_at < s.submitted_at
                            OR (e.submitted_at = s.submitted_at AND e.id < s.id)))
               ORDER BY s.submitted_at, s.id"""
        ).fetchall()
    return [_row_to_submission(r) for r in rows]


def commit_award(
    conn,
    submission_id: int,
    user_id: int,
    challenge_id: str,
    points: int,
    first_blood: bool,
    awarded_at: datetime,
) -> bool:
    """Apply an award inside the caller's transaction.

    Returns False without writing anything when the submission was already
    stamped. A second award for the same key violates the partial unique
    index and raises sqlite3.IntegrityError.
    """
    cursor = conn.execute(
        """UPDATE submissions
           SET points_awarded = ?, awarded_at = ?, first_blood = ?
           WHERE id = ? AND is_correct = 1 AND points_awarded IS NULL""",
        (points, to_ts(awarded_at), int(first_blood), submission_id),
    )
    if cursor.rowcount != 1:
        return False
    conn.execute(
        """UPDATE users
           SET total_points = total_points + ?, solved_count = solved_count + 1
           WHERE id = ?""",
        (points, user_id),
    )
    conn.execute(
        "UPDATE challenges SET solve_count = solve_count + 1 WHERE id = ?",
        (challenge_id,),
    )
    return True


# Challenge start helpers
def record_challenge_start(
    challenge_id: str, user_id: int, started_at: datetime, container_ref: str | None = None
):
    with get_connection() as conn:
        conn.execute(
            """INSERT INTO challenge_starts (challenge_id, user_id, started_at, container_ref)
               VALUES (?, ?, ?, ?)""",
            (challenge_id, user_id, to_ts(started_at), container_ref),
        )


def record_challenge_stop(challenge_id: str, user_id: int, stopped_at: datetime):
    with get_connection() as conn:
        conn.execute(
            """UPDATE challenge_starts SET stopped_at = ?
               WHERE challenge_id = ? AND user_id = ? AND stopped_at IS NULL""",
            (to_ts(stopped_at), challenge_id, user_id),
        )


def first_start(conn, challenge_id: str, user_id: int) -> datetime | None:
    row = conn.execute(
        """SELECT MIN(started_at) AS started_at FROM challenge_starts
           WHERE challenge_id = ? AND user_id = ?""",
        (challenge_id, user_id),
    ).fetchone()
    return from_ts(row["started_at"]) if row else None


# Scoreboard helpers
def leaderboard_rows(top: int) -> list[dict]:
    with get_connection() as conn:
        rows = conn.execute(
            """SELECT u.id AS user_id, u.username, u.total_points, u.solved_count,
                      MAX(s.submitted_at) AS last_solved_at
               FROM users u
               LEFT JOIN submissions s ON s.user_id = u.id AND s.points_awarded IS NOT NULL
               WHERE u.is_active = 1
               GROUP BY u.id
               ORDER BY u.total_points DESC, COALESCE(MAX(s.submitted_at), '9999') ASC, u.id ASC
               LIMIT ?""",
            (top,),
        ).fetchall()
    return [dict(r) for r in rows]


def category_leaderboard_rows(category: str, top: int) -> list[dict]:
    with get_connection() as conn:
        rows = conn.execute(
            """SELECT u.id AS user_id, u.username,
                      SUM(s.points_awarded) AS total_points,
                      COUNT(s.id) AS solved_count,
                      MAX(s.submitted_at) AS last_solved_at
               FROM submissions s
               JOIN users u ON u.id = s.user_id
               JOIN challenges c ON c.id = s.challenge_id
               WHERE s.points_awarded IS NOT NULL AND c.category = ? AND u.is_active = 1
               GROUP BY u.id
               ORDER BY total_points DESC, last_solved_at ASC, u.id ASC
               LIMIT ?""",
            (category, top),
        ).fetchall()
    return [dict(r) for r in rows]


def solved_challenges(user_id: int) -> list[dict]:
    with get_connection() as conn:
        rows = conn.execute(
            """SELECT s.challenge_id, c.category, s.points_awarded AS points,
                      s.submitted_at AS solved_at,
                      (SELECT MIN(cs.started_at) FROM challenge_starts cs
                       WHERE cs.challenge_id = s.challenge_id AND cs.user_id = s.user_id)
                          AS started_at
               FROM submissions s
               JOIN challenges c ON c.id = s.challenge_id
               WHERE s.user_id = ? AND s.points_awarded IS NOT NULL
               ORDER BY s.submitted_at DESC""",
            (user_id,),
        ).fetchall()
    solved = []
    for r in rows:
        data = dict(r)
        data["solved_at"] = from_ts(data["solved_at"])
        data["started_at"] = from_ts(data["started_at"])
        solved.append(data)
    return solved


# Audit log helpers
def log_event(
    event_type: str,
    user_id: int | None = None,
    challenge_id: str | None = None,
    details: str = "",
    level: str = "info",
):
    """Append to the audit log. A failed write is logged, not raised."""
    try:
        with get_connection() as conn:
            conn.execute(
                """INSERT INTO audit_log (event_type, user_id, challenge_id, details, level, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (event_type, user_id, challenge_id, details, level, to_ts(utcnow())),
            )
    except sqlite3.Error as e:
        logger.warning(f"Audit write failed for {event_type}: {e}")


def _event_filters(
    event_type: str | None = None,
    user_id: int | None = None,
    challenge_id: str | None = None,
    level: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
) -> tuple[str, list]:
    clause = " WHERE 1 = 1"
    params: list = []
    if event_type is not None:
        clause += " AND event_type = ?"
        params.append(event_type)
    if user_id is not None:
        clause += " AND user_id = ?"
        params.append(user_id)
    if challenge_id is not None:
        clause += " AND challenge_id = ?"
        params.append(challenge_id)
    if level is not None:
        clause += " AND level = ?"
        params.append(level)
    if since is not None:
        clause += " AND created_at >= ?"
        params.append(to_ts(since))
    if until is not None:
        clause += " AND created_at <= ?"
        params.append(to_ts(until))
    return clause, params


def get_events(
    event_type: str | None = None,
    user_id: int | None = None,
    challenge_id: str | None = None,
    level: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    """Audit events matching every given filter, newest first."""
    clause, params = _event_filters(event_type, user_id, challenge_id, level, since, until)
    query = "SELECT * FROM audit_log" + clause + " ORDER BY id DESC LIMIT ? OFFSET ?"
    params += [limit, offset]
    with get_connection() as conn:
        rows = conn.execute(query, params).fetchall()
    return [dict(r) for r in rows]


def event_statistics(since: datetime | None = None, until: datetime | None = None) -> dict:
    """Event counts by type, level and user over a time range."""
    clause, params = _event_filters(since=since, until=until)
    with get_connection() as conn:
        total = conn.execute("SELECT COUNT(*) FROM audit_log" + clause, params).fetchone()[0]
        by_type = conn.execute(
            "SELECT event_type, COUNT(*) AS n FROM audit_log" + clause
            + " GROUP BY event_type ORDER BY n DESC, event_type",
            params,
        ).fetchall()
        by_level = conn.execute(
            "SELECT level, COUNT(*) AS n FROM audit_log" + clause + " GROUP BY level ORDER BY level",
            params,
        ).fetchall()
        by_user = conn.execute(
            "SELECT user_id, COUNT(*) AS n FROM audit_log" + clause
            + " AND user_id IS NOT NULL GROUP BY user_id ORDER BY n DESC, user_id",
            params,
        ).fetchall()
    return {
        "total": total,
        "by_event_type": {r["event_type"]: r["n"] for r in by_type},
        "by_level": {r["level"]: r["n"] for r in by_level},
        "by_user": {r["user_id"]: r["n"] for r in by_user},
    }


def delete_events_before(cutoff: datetime) -> int:
    with get_connection() as conn:
        cursor = conn.execute("DELETE FROM audit_log WHERE created_at < ?", (to_ts(cutoff),))
        return cursor.rowcount
