from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Instance:
    """One observed workload instance (a labeled container)."""

    id: str
    name: str
    app: str
    revision: int
    slot: int
    image: str
    running: bool
    healthy: bool | None = None
    latency_ms: float | None = None
    message: str = ""
    fail_count: int = 0


@dataclass(frozen=True)
class ChangeEvent:
    kind: str  # added|removed|stopped|unhealthy|recovered
    instance: Instance
    detail: str = ""


@dataclass
class ObservedState:
    apps: dict[str, list[Instance]] = field(default_factory=dict)

    def get(self, app: str) -> list[Instance]:
        return list(self.apps.get(app, []))

    def add(self, inst: Instance) -> None:
        self.apps.setdefault(inst.app, []).append(inst)


@dataclass
class RolloutStatus:
    id: str
    app: str
    from_revision: int | None
    to_revision: int
    state: str  # progressing|paused|complete|rolled_back|aborted
    phase: str
    weight: int
    message: str
    failures: int = 0
    started_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)


class RuntimeState:
    """In-memory state shared by the observer, reconciler and API."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.last_status: dict[str, bool] = {}  # instance_id -> last healthy
        self.fail_counts: dict[str, int] = {}  # instance_id -> consecutive fails
        self.rollouts: dict[str, RolloutStatus] = {}

    def mark_health(self, instance_id: str, healthy: bool) -> tuple[bool | None, int]:
        """Update last health and consecutive failure count.

        Returns (previous_healthy or None, current_fail_count).
        """
        with self.lock:
            prev = self.last_status.get(instance_id)
            if healthy:
                self.last_status[instance_id] = True
                self.fail_counts[instance_id] = 0
                return prev, 0
            self.last_status[instance_id] = False
            self.fail_counts[instance_id] = self.fail_counts.get(instance_id, 0) + 1
            return prev, self.fail_counts[instance_id]

    def fail_count(self, instance_id: str) -> int:
        with self.lock:
            return self.fail_counts.get(instance_id, 0)

    def forget(self, instance_id: str) -> None:
        with self.lock:
            self.last_status.pop(instance_id, None)
            self.fail_counts.pop(instance_id, None)

    def upsert_rollout(self, st: RolloutStatus) -> None:
        with self.lock:
            st.updated_at = utc_now()
            self.rollouts[st.id] = st

    def get_rollout(self, rollout_id: str) -> RolloutStatus | None:
        with self.lock:
            return self.rollouts.get(rollout_id)

    def list_rollouts(self, app: str | None = None) -> list[RolloutStatus]:
        with self.lock:
            return [r for r in self.rollouts.values() if app is None or r.app == app]
