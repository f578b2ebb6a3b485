import os
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set test settings before importing arena
os.environ["DATABASE_PATH"] = "test_data/arena.db"
os.environ["BCRYPT_ROUNDS"] = "4"

from arena import db  # noqa: E402
from arena.ctf.docker_mgr import ContainerInfo  # noqa: E402
from arena.errors import SandboxUnavailable  # noqa: E402
from arena.models import Challenge, Difficulty, SecretEncoding  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeRuntime:
    """In-memory container runtime that records every call."""

    def __init__(self, delay: float = 0):
        self.delay = delay
        self.fail_start = False
        self.fail_stop: set[str] = set()
        self.healthy = True
        self.created: list[dict] = []
        self.stopped: list[str] = []
        self.cleaned = False
        self._lock = threading.Lock()

    def create_and_start(self, image, name, env=None, labels=None, port=None):
        if self.delay:
            time.sleep(self.delay)
        if self.fail_start:
            raise SandboxUnavailable(f"image {image} failed to start")
        with self._lock:
            n = len(self.created) + 1
            self.created.append({"image": image, "name": name, "env": env, "labels": labels, "port": port})
        return ContainerInfo(
            container_id=f"ctr-{n}",
            image=image,
            ip_address="127.0.0.1",
            port=40000 + n,
            url=f"http://127.0.0.1:{40000 + n}",
        )

    def stop_and_remove(self, container_id, timeout=5):
        if container_id in self.fail_stop:
            raise SandboxUnavailable(f"daemon refused to stop {container_id}")
        with self._lock:
            self.stopped.append(container_id)

    def is_healthy(self, container_id, url=None):
        return self.healthy

    def cleanup_all_managed(self):
        self.cleaned = True


CHALLENGES = [
    Challenge(
        id="web-login",
        title="Login Bypass",
        expected_secret="FLAG{sql_injection_master}",
        difficulty=Difficulty.MEDIUM,
        base_points=100,
        category="web",
    ),
    Challenge(
        id="crypto-md5",
        title="Hash It",
        # md5("FLAG{hashed}")
        expected_secret="3be5631f901768a675b1e4c9ede8dc33",
        secret_encoding=SecretEncoding.MD5,
        difficulty=Difficulty.EASY,
        base_points=50,
        category="crypto",
    ),
    Challenge(
        id="regex-flag",
        title="Pattern",
        expected_secret=r"^FLAG\{[a-z]+_\d+\}$",
        secret_encoding=SecretEncoding.REGEX,
        difficulty=Difficulty.HARD,
        base_points=200,
        category="misc",
    ),
    Challenge(
        id="pwn-box",
        title="Stack Smash",
        expected_secret="FLAG{pwned}",
        difficulty=Difficulty.EXPERT,
        base_points=300,
        category="pwn",
        requires_sandbox=True,
        sandbox_image="arena/pwn-box:latest",
        sandbox_port=1337,
    ),
    Challenge(
        id="pwn-noimage",
        title="Missing Image",
        expected_secret="FLAG{nope}",
        category="pwn",
        requires_sandbox=True,
    ),
    Challenge(
        id="retired",
        title="Retired",
        expected_secret="FLAG{old}",
        is_active=False,
    ),
]


@pytest.fixture(scope="session", autouse=True)
def setup_test_dir():
    test_dir = Path("test_data")
    test_dir.mkdir(exist_ok=True)
    yield
    # Cleanup
    import shutil

    if test_dir.exists():
        shutil.rmtree(test_dir)


@pytest.fixture(autouse=True)
def test_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "arena.db")
    db.init_db()
    for challenge in CHALLENGES:
        db.upsert_challenge(challenge)
    return tmp_path / "arena.db"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def make_user():
    def _make(username: str = "alice") -> int:
        return db.create_user(username, f"{username}@example.com", "not-a-real-hash")

    return _make


@pytest.fixture
def client(runtime, monkeypatch):
    import arena.main

    monkeypatch.setattr(arena.main, "get_container_runtime", lambda: runtime)
    with TestClient(arena.main.app) as c:
        yield c
