from __future__ import annotations

import math
import secrets
import time
from typing import Callable

from .runtime import RolloutStatus, RuntimeState
from .store import DesiredStateStore, RolloutPolicy

PROGRESSING = "progressing"
PAUSED = "paused"
COMPLETE = "complete"
ROLLED_BACK = "rolled_back"
ABORTED = "aborted"

TERMINAL = {COMPLETE, ROLLED_BACK, ABORTED}


def phase_name(index: int, steps: list[int]) -> str:
    if index >= len(steps) - 1:
        return "full"
    if index == 0:
        return "canary"
    return "partial"


class RolloutController:
    """State machine for one candidate revision.

    The candidate is brought up in phases (canary, partial..., full), each a
    share of its replicas while the previous revision is scaled down by the
    same share. A phase advances once enough new instances have stayed
    healthy for the bake interval. A phase that does not get healthy within
    its timeout, or too many replaced candidate instances, rolls back.
    """

    def __init__(
        self,
        app: str,
        to_revision: int,
        new_total: int,
        from_revision: int | None,
        old_total: int,
        policy: RolloutPolicy,
        runtime: RuntimeState | None = None,
        store: DesiredStateStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.app = app
        self.to_revision = to_revision
        self.from_revision = from_revision
        self.new_total = max(0, int(new_total))
        self.old_total = max(0, int(old_total))
        self.policy = policy
        self.runtime = runtime
        self.store = store
        self.clock = clock

        self.steps = policy.steps()
        self.step_index = 0
        self._phase_started = clock()
        self._healthy_since: float | None = None

        self.status = RolloutStatus(
            id=secrets.token_hex(6),
            app=app,
            from_revision=from_revision,
            to_revision=to_revision,
            state=PROGRESSING,
            phase=phase_name(0, self.steps),
            weight=self.steps[0],
            message=f"Started rollout of revision {to_revision} at {self.steps[0]}%",
        )
        self._publish("INFO")

    @property
    def id(self) -> str:
        return self.status.id

    @property
    def state(self) -> str:
        return self.status.state

    @property
    def terminal(self) -> bool:
        return self.status.state in TERMINAL

    @property
    def weight(self) -> int:
        return self.steps[self.step_index]

    def target_split(self) -> tuple[int, int]:
        """Replica targets as (new revision, previous revision)."""
        if self.state == COMPLETE:
            return self.new_total, 0
        if self.state in (ROLLED_BACK, ABORTED):
            return 0, self.old_total
        w = self.weight
        new = math.ceil(self.new_total * w / 100) if self.new_total else 0
        if self.new_total:
            new = max(1, new)
        old = math.ceil(self.old_total * (100 - w) / 100)
        return new, old

    def required_healthy(self) -> int:
        new, _ = self.target_split()
        if new == 0:
            return 0
        return max(1, math.ceil(new * self.policy.min_healthy_percent / 100))

    def observe(self, healthy_new: int) -> str:
        """Feed the number of healthy new-revision instances; returns the resulting state."""
        if self.terminal or self.state == PAUSED:
            return self.state

        now = self.clock()
        need = self.required_healthy()
        if healthy_new >= need:
            if self._healthy_since is None:
                self._healthy_since = now
            if now - self._healthy_since >= self.policy.step_interval_s:
                self._phase_done(now)
            return self.state

        self._healthy_since = None
        if now - self._phase_started >= self.policy.phase_timeout_s:
            self.roll_back(
                f"{self.status.phase} phase at {self.weight}% not healthy within "
                f"{self.policy.phase_timeout_s}s ({healthy_new}/{need} healthy)"
            )
        return self.state

    def _phase_done(self, now: float) -> None:
        if self.step_index >= len(self.steps) - 1:
            self.status.state = COMPLETE
            self.status.message = "Rollout completed."
            self._publish("INFO")
            return
        if not self.policy.auto:
            self.status.state = PAUSED
            self.status.message = f"{self.status.phase} phase at {self.weight}% healthy; waiting for continue."
            self._publish("INFO")
            return
        self._next_phase(now)

    def _next_phase(self, now: float) -> None:
        self.step_index += 1
        self._phase_started = now
        self._healthy_since = None
        self.status.state = PROGRESSING
        self.status.phase = phase_name(self.step_index, self.steps)
        self.status.weight = self.weight
        self.status.message = f"Advanced to {self.status.phase} phase at {self.weight}%."
        self._publish("INFO")

    def resume(self) -> RolloutStatus:
        """Advance a paused rollout to its next phase."""
        if self.state == PAUSED:
            self._next_phase(self.clock())
        return self.status

    def update_policy(self, policy: RolloutPolicy) -> None:
        """Adopt a re-applied policy; the rollout keeps at least its current share."""
        if policy == self.policy or self.terminal:
            return
        weight = self.weight
        self.policy = policy
        self.steps = policy.steps()
        self.step_index = next((i for i, w in enumerate(self.steps) if w >= weight), len(self.steps) - 1)
        if self.weight != weight:
            self._phase_started = self.clock()
            self._healthy_since = None
        self.status.phase = phase_name(self.step_index, self.steps)
        self.status.weight = self.weight
        if self.state == PAUSED and policy.auto:
            self.status.state = PROGRESSING
        self.status.message = f"Rollout policy updated; {self.status.phase} phase at {self.weight}%."
        self._publish("INFO")

    def record_failure(self, reason: str) -> str:
        """Count a failed candidate instance; too many of them roll the deployment back."""
        if self.terminal:
            return self.state
        self.status.failures += 1
        if self.status.failures > self.policy.max_failures:
            self.roll_back(f"{self.status.failures} candidate instance failures (last: {reason})")
        else:
            self._publish(None)
        return self.state

    def roll_back(self, reason: str) -> None:
        if self.terminal:
            return
        self.status.state = ROLLED_BACK
        self.status.message = f"Rolled back: {reason}"
        self._publish("ERROR")

    def abort(self, reason: str = "aborted by operator") -> None:
        if self.terminal:
            return
        self.status.state = ABORTED
        self.status.message = f"Aborted: {reason}"
        self._publish("WARN")

    def _publish(self, level: str | None) -> None:
        if self.runtime is not None:
            self.runtime.upsert_rollout(self.status)
        if level and self.store is not None:
            self.store.log_event(level, self.status.message, app=self.app, revision=self.to_revision)
