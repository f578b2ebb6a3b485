"""Per-(challenge, user) sandbox leases on top of a container runtime."""

import logging
import threading
import uuid
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable

from arena import db
from arena.errors import (
    CapacityExceeded,
    ChallengeNotFound,
    SandboxNotRequired,
    SandboxUnavailable,
)
from arena.locks import KeyedLocks
from arena.models import LeaseStatus, SandboxLease, SandboxStatistics, utcnow

logger = logging.getLogger(__name__)

LeaseKey = tuple[str, int]


class SandboxLeaseManager:
    """Live index of sandbox leases.

    `_lock` guards the index and the count of starts in flight and is never
    held across a runtime call. `_key_locks` serializes start/stop/extend for
    one (challenge, user) pair so that two concurrent starts cannot both
    provision a container.
    """

    def __init__(
        self,
        runtime,
        ttl: timedelta = timedelta(hours=2),
        max_leases: int = 50,
        max_lifetime: timedelta = timedelta(hours=8),
        default_image: str | None = None,
        default_port: int | None = 5000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.runtime = runtime
        self.ttl = ttl
        self.max_leases = max_leases
        self.max_lifetime = max_lifetime
        self.default_image = default_image
        self.default_port = default_port
        self.clock = clock
        self._leases: dict[LeaseKey, SandboxLease] = {}
        self._pending = 0
        self._lock = threading.Lock()
        self._key_locks = KeyedLocks()

    def start(self, challenge_id: str, user_id: int) -> SandboxLease:
        key = (challenge_id, user_id)
        with self._key_locks.hold(key):
            now = self.clock()
            with self._lock:
                lease = self._leases.get(key)
                if lease and not lease.is_expired(now):
                    logger.info(f"Sandbox already running for {challenge_id}/{user_id}")
                    return replace(lease)
                if lease:
                    del self._leases[key]

            if lease:
                self._teardown(lease, LeaseStatus.EXPIRED, "SANDBOX_EXPIRED")

            challenge = db.get_challenge(challenge_id)
            if not challenge or not challenge.is_active:
                raise ChallengeNotFound(challenge_id)
            if not challenge.requires_sandbox:
                raise SandboxNotRequired(challenge_id)

            image = challenge.sandbox_image or self.default_image
            if not image:
                raise SandboxUnavailable(f"No sandbox image configured for {challenge_id}")

            # Expired leases the sweeper has not reached yet do not count
            with self._lock:
                evicted = self._pop_expired(self.clock())
            for old in evicted:
                logger.info(f"Cleaning up expired sandbox {old.id} to make room")
                self._teardown(old, LeaseStatus.EXPIRED, "SANDBOX_EXPIRED")

            with self._lock:
                if len(self._leases) + self._pending >= self.max_leases:
                    logger.warning(f"Sandbox capacity reached ({self.max_leases})")
                    raise CapacityExceeded()
                self._pending += 1

            lease = None
            try:
                info = self._provision(image, challenge_id, user_id, challenge.sandbox_port)
                now = self.clock()
                lease = SandboxLease(
                    id=uuid.uuid4().hex,
                    challenge_id=challenge_id,
                    user_id=user_id,
                    container_ref=info.container_id,
                    endpoint=info.url,
                    created_at=now,
                    expires_at=now + self.ttl,
                )
            except SandboxUnavailable as e:
                logger.error(f"Sandbox start failed for {challenge_id}/{user_id}: {e.detail}")
                db.log_event("SANDBOX_START_FAILED", user_id, challenge_id, e.detail, level="error")
                raise
            finally:
                with self._lock:
                    self._pending -= 1
                    if lease is not None:
                        self._leases[key] = lease

            db.record_challenge_start(challenge_id, user_id, now, info.container_id)
            db.log_event(
                "SANDBOX_STARTED",
                user_id,
                challenge_id,
                f"lease={lease.id}, container={info.container_id}, endpoint={info.url}",
            )
            logger.info(f"Started sandbox {lease.id} for {challenge_id}/{user_id}")
            return replace(lease)

    def _pop_expired(self, now: datetime) -> list[SandboxLease]:
        """Remove expired leases from the index. Caller holds `_lock`."""
        expired = [k for k, l in self._leases.items() if l.is_expired(now)]
        return [self._leases.pop(k) for k in expired]

    def _provision(self, image: str, challenge_id: str, user_id: int, port: int | None):
        if self.runtime is None:
            raise SandboxUnavailable("Container runtime not available")
        stamp = self.clock().strftime("%Y%m%d%H%M%S")
        return self.runtime.create_and_start(
            image,
            name=f"arena-{challenge_id}-{user_id}-{stamp}",
            env={"CHALLENGE_ID": challenge_id, "USER_ID": str(user_id)},
            labels={"arena.challenge": challenge_id, "arena.user": str(user_id)},
            port=port or self.default_port,
        )

    def _teardown(self, lease: SandboxLease, status: LeaseStatus, event: str) -> bool:
        """Stop the lease's container. The lease must already be out of the index."""
        now = self.clock()
        lease.stopped_at = now
        try:
            if self.runtime is None:
                raise SandboxUnavailable("Container runtime not available")
            self.runtime.stop_and_remove(lease.container_ref)
        except SandboxUnavailable as e:
            lease.status = LeaseStatus.ERROR
            logger.error(f"Failed to tear down sandbox {lease.id} ({lease.container_ref}): {e.detail}")
            db.log_event(event, lease.user_id, lease.challenge_id, f"lease={lease.id}, error={e.detail}", level="error")
            return False

        lease.status = status
        db.record_challenge_stop(lease.challenge_id, lease.user_id, now)
        db.log_event(
            event,
            lease.user_id,
            lease.challenge_id,
            f"lease={lease.id}, container={lease.container_ref}, runtime={now - lease.created_at}",
        )
        return True

    def stop(self, challenge_id: str, user_id: int) -> bool:
        key = (challenge_id, user_id)
        with self._key_locks.hold(key):
            with self._lock:
                lease = self._leases.pop(key, None)
            if lease is None:
                logger.info(f"No sandbox found for {challenge_id}/{user_id}")
                return True

            stopped = self._teardown(lease, LeaseStatus.STOPPED, "SANDBOX_STOPPED")
            if stopped:
                logger.info(f"Stopped sandbox {lease.id} for {challenge_id}/{user_id}")
            return stopped

    def extend(self, challenge_id: str, user_id: int, duration: timedelta) -> SandboxLease | None:
        """Push back expiry, never past `max_lifetime` from lease creation.

        Returns a copy of the extended lease, or None if nothing was extended.
        """
        if duration <= timedelta(0):
            return None

        key = (challenge_id, user_id)
        with self._key_locks.hold(key):
            now = self.clock()
            with self._lock:
                lease = self._leases.get(key)
                if lease is None or lease.is_expired(now):
                    return None

                limit = lease.created_at + self.max_lifetime
                if lease.expires_at >= limit:
                    logger.info(f"Sandbox {lease.id} already at maximum lifetime")
                    return None

                lease.expires_at = min(lease.expires_at + duration, limit)
                lease.extension_count += 1
                extended = replace(lease)
                expires_at = extended.expires_at

            db.log_event(
                "SANDBOX_EXTENDED",
                user_id,
                challenge_id,
                f"lease={lease.id}, by={duration}, expires_at={expires_at.isoformat()}",
            )
            logger.info(f"Extended sandbox {lease.id} until {expires_at.isoformat()}")
            return extended

    def is_healthy(self, challenge_id: str, user_id: int) -> bool:
        with self._lock:
            lease = self._leases.get((challenge_id, user_id))
            if lease is None or lease.is_expired(self.clock()):
                return False
            container_ref, endpoint = lease.container_ref, lease.endpoint

        if self.runtime is None:
            return False
        try:
            return self.runtime.is_healthy(container_ref, endpoint or None)
        except SandboxUnavailable as e:
            logger.error(f"Health check failed for {container_ref}: {e.detail}")
            return False

    def get(self, challenge_id: str, user_id: int) -> SandboxLease | None:
        with self._lock:
            lease = self._leases.get((challenge_id, user_id))
            return replace(lease) if lease else None

    def active_leases(self) -> list[SandboxLease]:
        now = self.clock()
        with self._lock:
            return [replace(l) for l in self._leases.values() if not l.is_expired(now)]

    def statistics(self) -> SandboxStatistics:
        now = self.clock()
        with self._lock:
            leases = list(self._leases.values())
        active = [l for l in leases if not l.is_expired(now)]
        return SandboxStatistics(
            active=len(active),
            expired_pending=len(leases) - len(active),
            by_challenge=dict(Counter(l.challenge_id for l in active)),
            by_user=dict(Counter(l.user_id for l in active)),
        )

    def sweep_expired(self) -> int:
        """Tear down every expired lease. One failure does not stop the pass."""
        now = self.clock()
        with self._lock:
            keys = [k for k, l in self._leases.items() if l.is_expired(now)]

        swept = 0
        for key in keys:
            with self._key_locks.hold(key):
                with self._lock:
                    lease = self._leases.get(key)
                    # Replaced or extended since the snapshot
                    if lease is None or not lease.is_expired(self.clock()):
                        continue
                    del self._leases[key]

                logger.info(f"Cleaning up expired sandbox {lease.id} for {key[0]}/{key[1]}")
                try:
                    self._teardown(lease, LeaseStatus.EXPIRED, "SANDBOX_EXPIRED")
                except Exception:
                    logger.exception(f"Unexpected error expiring sandbox {lease.id}")
                    lease.status = LeaseStatus.ERROR
                swept += 1

        if swept:
            logger.info(f"Cleaned up {swept} expired sandboxes")
        return swept

    def shutdown(self):
        """Tear down every live lease."""
        with self._lock:
            leases = list(self._leases.values())
            self._leases.clear()
        for lease in leases:
            self._teardown(lease, LeaseStatus.STOPPED, "SANDBOX_STOPPED")
        if leases:
            logger.info(f"Stopped {len(leases)} sandboxes on shutdown")

    def __len__(self) -> int:
        with self._lock:
            return len(self._leases)
