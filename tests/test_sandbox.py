import threading
from datetime import timedelta

import pytest

from arena import db
from arena.ctf.sandbox import SandboxLeaseManager
from arena.errors import (
    CapacityExceeded,
    ChallengeNotFound,
    SandboxNotRequired,
    SandboxUnavailable,
)
from arena.models import LeaseStatus


@pytest.fixture
def leases(runtime, clock):
    return SandboxLeaseManager(
        runtime,
        ttl=timedelta(hours=2),
        max_leases=3,
        max_lifetime=timedelta(hours=3),
        clock=clock,
    )


def test_start_provisions_hardened_sandbox(leases, runtime, clock, make_user):
    uid = make_user()
    lease = leases.start("pwn-box", uid)

    assert lease.status == LeaseStatus.RUNNING
    assert lease.container_ref == "ctr-1"
    assert lease.endpoint == "http://127.0.0.1:40001"
    assert lease.expires_at == clock() + timedelta(hours=2)

    [call] = runtime.created
    assert call["image"] == "arena/pwn-box:latest"
    assert call["port"] == 1337
    assert call["labels"] == {"arena.challenge": "pwn-box", "arena.user": str(uid)}

    with db.get_connection() as conn:
        assert db.first_start(conn, "pwn-box", uid) == clock()
    assert db.get_events(event_type="SANDBOX_STARTED")


def test_start_is_idempotent(leases, runtime, make_user):
    uid = make_user()
    first = leases.start("pwn-box", uid)
    second = leases.start("pwn-box", uid)
    assert first.id == second.id
    assert len(runtime.created) == 1


def test_concurrent_start_single_instance(clock, make_user):
    from conftest import FakeRuntime

    uid = make_user()
    runtime = FakeRuntime(delay=0.05)
    leases = SandboxLeaseManager(runtime, clock=clock)
    barrier = threading.Barrier(5)
    ids = []

    def start():
        barrier.wait()
        ids.append(leases.start("pwn-box", uid).id)

    threads = [threading.Thread(target=start) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(ids)) == 1
    assert len(runtime.created) == 1
    assert len(leases) == 1


def test_start_errors(leases, make_user):
    uid = make_user()
    with pytest.raises(ChallengeNotFound):
        leases.start("missing", uid)
    with pytest.raises(ChallengeNotFound):
        leases.start("retired", uid)
    with pytest.raises(SandboxNotRequired):
        leases.start("web-login", uid)
    with pytest.raises(SandboxUnavailable):
        leases.start("pwn-noimage", uid)
    assert len(leases) == 0


def test_default_image_fills_in(runtime, clock, make_user):
    uid = make_user()
    leases = SandboxLeaseManager(runtime, default_image="arena/generic:latest", clock=clock)
    leases.start("pwn-noimage", uid)
    assert runtime.created[0]["image"] == "arena/generic:latest"
    assert runtime.created[0]["port"] == 5000


def test_capacity(leases, make_user):
    users = [make_user(f"user{i}") for i in range(4)]
    for uid in users[:3]:
        leases.start("pwn-box", uid)

    with pytest.raises(CapacityExceeded) as exc:
        leases.start("pwn-box", users[3])
    assert exc.value.client_message == "Sandbox capacity reached, try again later."
    assert "3" not in exc.value.client_message


def test_capacity_ignores_unswept_expired_leases(leases, runtime, clock, make_user):
    users = [make_user(f"user{i}") for i in range(4)]
    old = [leases.start("pwn-box", uid) for uid in users[:3]]
    clock.advance(hours=2, seconds=1)

    lease = leases.start("pwn-box", users[3])
    assert lease.status == LeaseStatus.RUNNING
    assert sorted(runtime.stopped) == sorted(l.container_ref for l in old)
    assert len(leases) == 1
    assert len(db.get_events(event_type="SANDBOX_EXPIRED")) == 3


def test_runtime_failure_leaves_no_lease(leases, runtime, make_user):
    uid = make_user()
    runtime.fail_start = True
    with pytest.raises(SandboxUnavailable) as exc:
        leases.start("pwn-box", uid)
    assert exc.value.client_message == "Sandbox unavailable."
    assert leases.get("pwn-box", uid) is None
    assert db.get_events(event_type="SANDBOX_START_FAILED")

    # The failed start released its capacity reservation
    runtime.fail_start = False
    for i in range(3):
        leases.start("pwn-box", make_user(f"other{i}"))


def test_no_runtime(clock, make_user):
    leases = SandboxLeaseManager(None, clock=clock)
    with pytest.raises(SandboxUnavailable):
        leases.start("pwn-box", make_user())
    assert len(leases) == 0


def test_stop(leases, runtime, make_user):
    uid = make_user()
    lease = leases.start("pwn-box", uid)
    assert leases.stop("pwn-box", uid)
    assert runtime.stopped == [lease.container_ref]
    assert leases.get("pwn-box", uid) is None
    # Nothing left to stop
    assert leases.stop("pwn-box", uid)


def test_stop_failure_marks_error(leases, runtime, make_user):
    uid = make_user()
    lease = leases.start("pwn-box", uid)
    runtime.fail_stop.add(lease.container_ref)
    assert not leases.stop("pwn-box", uid)
    assert len(leases) == 0


def test_extend(leases, clock, make_user):
    uid = make_user()
    lease = leases.start("pwn-box", uid)

    extended = leases.extend("pwn-box", uid, timedelta(minutes=30))
    assert extended.expires_at == lease.expires_at + timedelta(minutes=30)
    assert extended.extension_count == 1
    assert leases.get("pwn-box", uid) == extended

    # A copy, so a later stop cannot change what the caller holds
    leases.stop("pwn-box", uid)
    assert extended.status == LeaseStatus.RUNNING
    assert leases.get("pwn-box", uid) is None


def test_extend_is_capped(leases, clock, make_user):
    uid = make_user()
    lease = leases.start("pwn-box", uid)

    assert leases.extend("pwn-box", uid, timedelta(hours=5))
    assert leases.get("pwn-box", uid).expires_at == lease.created_at + timedelta(hours=3)
    assert not leases.extend("pwn-box", uid, timedelta(minutes=1))
    assert leases.get("pwn-box", uid).extension_count == 1


def test_extend_rejects_bad_requests(leases, clock, make_user):
    uid = make_user()
    assert not leases.extend("pwn-box", uid, timedelta(minutes=10))

    leases.start("pwn-box", uid)
    assert not leases.extend("pwn-box", uid, timedelta(0))
    assert not leases.extend("pwn-box", uid, timedelta(minutes=-5))

    clock.advance(hours=2, seconds=1)
    assert not leases.extend("pwn-box", uid, timedelta(minutes=10))


def test_is_healthy(leases, runtime, clock, make_user):
    uid = make_user()
    assert not leases.is_healthy("pwn-box", uid)

    leases.start("pwn-box", uid)
    assert leases.is_healthy("pwn-box", uid)
    runtime.healthy = False
    assert not leases.is_healthy("pwn-box", uid)

    runtime.healthy = True
    clock.advance(hours=3)
    assert not leases.is_healthy("pwn-box", uid)


def test_sweep_expired(leases, runtime, clock, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    old = leases.start("pwn-box", alice)
    clock.advance(hours=1)
    leases.start("pwn-box", bob)

    clock.advance(hours=1, seconds=1)
    assert leases.sweep_expired() == 1
    assert leases.get("pwn-box", alice) is None
    assert leases.get("pwn-box", bob) is not None
    assert runtime.stopped == [old.container_ref]
    assert db.get_events(event_type="SANDBOX_EXPIRED")


def test_sweep_continues_past_failures(leases, runtime, clock, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    first = leases.start("pwn-box", alice)
    second = leases.start("pwn-box", bob)
    runtime.fail_stop.add(first.container_ref)

    clock.advance(hours=3)
    assert leases.sweep_expired() == 2
    assert len(leases) == 0
    assert runtime.stopped == [second.container_ref]


def test_start_replaces_expired_lease(leases, runtime, clock, make_user):
    uid = make_user()
    old = leases.start("pwn-box", uid)
    clock.advance(hours=2, seconds=1)

    new = leases.start("pwn-box", uid)
    assert new.id != old.id
    assert runtime.stopped == [old.container_ref]
    assert len(runtime.created) == 2


def test_statistics(leases, clock, make_user):
    alice, bob = make_user("alice"), make_user("bob")
    leases.start("pwn-box", alice)
    clock.advance(hours=1)
    leases.start("pwn-box", bob)
    clock.advance(hours=1, seconds=1)

    stats = leases.statistics()
    assert stats.active == 1
    assert stats.expired_pending == 1
    assert stats.by_challenge == {"pwn-box": 1}
    assert stats.by_user == {bob: 1}
    assert [l.user_id for l in leases.active_leases()] == [bob]


def test_shutdown_stops_everything(leases, runtime, make_user):
    for name in ("alice", "bob"):
        leases.start("pwn-box", make_user(name))
    leases.shutdown()
    assert len(leases) == 0
    assert sorted(runtime.stopped) == ["ctr-1", "ctr-2"]


def test_returned_lease_is_a_copy(leases, make_user):
    uid = make_user()
    lease = leases.start("pwn-box", uid)
    lease.expires_at = lease.created_at
    assert leases.get("pwn-box", uid).expires_at != lease.created_at
