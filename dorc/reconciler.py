from __future__ import annotations

import logging
import time
from collections import defaultdict
from threading import Event, RLock, Thread
from typing import Callable

from . import alerts
from .cluster import ClusterError
from .executor import CREATE, REMOVE, REPLACE, Action, ActionExecutor, ActionResult
from .observer import ClusterObserver
from .rollouts import ABORTED, COMPLETE, ROLLED_BACK, RolloutController
from .runtime import ChangeEvent, Instance, RolloutStatus, RuntimeState
from .settings import settings
from .store import DesiredState, DesiredStateStore, RevisionRow

logger = logging.getLogger(__name__)

Targets = dict[int, tuple[RevisionRow, int]]


def _free_slots(occupied: set[int]):
    slot = 0
    while True:
        if slot not in occupied:
            yield slot
        slot += 1


def plan_actions(app: str, targets: Targets, instances: list[Instance]) -> list[Action]:
    """Decide what to do so each targeted revision runs exactly its replica count.

    Removals come first so freed slots (and container names) can be reused
    by the creations that follow.
    """
    removes: list[Action] = []
    replaces: list[Action] = []
    creates: list[Action] = []

    by_rev: dict[int, list[Instance]] = defaultdict(list)
    for inst in instances:
        if inst.revision not in targets:
            removes.append(
                Action(REMOVE, app, inst.revision, inst.slot, instance_id=inst.id, reason="revision not desired")
            )
            continue
        by_rev[inst.revision].append(inst)

    for rev_no in sorted(targets):
        rev, count = targets[rev_no]
        count = max(0, count)

        kept: list[Instance] = []
        seen_slots: set[int] = set()
        for inst in sorted(by_rev.get(rev_no, []), key=lambda i: i.slot):
            if not inst.running:
                removes.append(Action(REMOVE, app, rev_no, inst.slot, instance_id=inst.id, reason="stopped"))
            elif inst.slot in seen_slots:
                removes.append(Action(REMOVE, app, rev_no, inst.slot, instance_id=inst.id, reason="duplicate slot"))
            else:
                seen_slots.add(inst.slot)
                kept.append(inst)

        if len(kept) > count:
            # Drop failing instances first, then the highest slots.
            ordered = sorted(kept, key=lambda i: (i.fail_count < rev.failure_threshold, -i.slot))
            surplus = ordered[: len(kept) - count]
            for inst in surplus:
                removes.append(Action(REMOVE, app, rev_no, inst.slot, instance_id=inst.id, reason="scale down"))
            dropped = {i.id for i in surplus}
            kept = [i for i in kept if i.id not in dropped]

        for inst in kept:
            if inst.fail_count >= rev.failure_threshold:
                replaces.append(
                    Action(
                        REPLACE,
                        app,
                        rev_no,
                        inst.slot,
                        image=rev.image,
                        internal_port=rev.internal_port,
                        env=rev.env,
                        instance_id=inst.id,
                        reason=f"{inst.fail_count} failed health checks ({inst.message})",
                    )
                )

        slots = _free_slots({i.slot for i in kept})
        for _ in range(count - len(kept)):
            creates.append(
                Action(
                    CREATE,
                    app,
                    rev_no,
                    next(slots),
                    image=rev.image,
                    internal_port=rev.internal_port,
                    env=rev.env,
                    reason="scale up",
                )
            )

    return removes + replaces + creates


class Reconciler:
    """Continuously reconciles desired state with observed state."""

    def __init__(
        self,
        store: DesiredStateStore,
        observer: ClusterObserver,
        executor: ActionExecutor,
        runtime: RuntimeState,
        poll_interval_s: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        notify: Callable[[str, str], bool] = alerts.send_email,
    ):
        self.store = store
        self.observer = observer
        self.executor = executor
        self.runtime = runtime
        self.poll_interval_s = settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        self.clock = clock
        self.notify = notify
        self._lock = RLock()
        self._controllers: dict[str, RolloutController] = {}
        self._stop = Event()
        self._thr: Thread | None = None
        self.observer.subscribe(self._on_change)

    # -- loop -------------------------------------------------------------

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="dorc-reconciler", daemon=True)
        self._thr.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thr is not None:
            self._thr.join(timeout)

    def _loop(self) -> None:
        self.store.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception("Reconciler tick failed")
                self.store.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            self._stop.wait(max(1, self.poll_interval_s))

    def tick(self) -> list[ActionResult]:
        """Run one observe -> decide -> act pass."""
        try:
            observed = self.observer.poll()
        except ClusterError as e:
            # An unreachable runtime is not an empty one; do nothing this round.
            self.store.log_event("WARN", f"Cluster unavailable, skipping reconcile: {e}")
            return []

        results: list[ActionResult] = []
        desired_apps = self.store.list_desired()
        names = {d.app for d in desired_apps}

        for d in desired_apps:
            instances = observed.get(d.app)
            targets = self._drive_rollout(d, instances)
            actions = plan_actions(d.app, targets, instances)
            if self._count_candidate_failures(d, actions):
                # Rolled back: plan against the active revision only.
                targets = {d.active.revision: (d.active, d.active.replicas)} if d.active else {}
                actions = plan_actions(d.app, targets, instances)
            results.extend(self.executor.execute(actions))

        for app, instances in observed.apps.items():
            if app in names:
                continue
            actions = [
                Action(REMOVE, app, i.revision, i.slot, instance_id=i.id, reason="application not desired")
                for i in instances
            ]
            results.extend(self.executor.execute(actions))

        with self._lock:
            for app in list(self._controllers):
                if app not in names:
                    self._controllers.pop(app).abort("application deleted")

        return results

    # -- rollouts ---------------------------------------------------------

    def _drive_rollout(self, d: DesiredState, instances: list[Instance]) -> Targets:
        active, cand = d.active, d.candidate
        with self._lock:
            ctrl = self._controllers.get(d.app)
            if ctrl is not None and (cand is None or ctrl.to_revision != cand.revision):
                ctrl.abort(
                    f"superseded by revision {cand.revision}" if cand is not None else "candidate withdrawn"
                )
                del self._controllers[d.app]
                ctrl = None

            if cand is not None and ctrl is None:
                ctrl = RolloutController(
                    app=d.app,
                    to_revision=cand.revision,
                    new_total=cand.replicas,
                    from_revision=active.revision if active else None,
                    old_total=active.replicas if active else 0,
                    policy=cand.policy,
                    runtime=self.runtime,
                    store=self.store,
                    clock=self.clock,
                )
                self._controllers[d.app] = ctrl

            if ctrl is None or cand is None:
                return {active.revision: (active, active.replicas)} if active else {}

            # Replicas and policy may have been changed by a scale or re-apply mid-rollout.
            ctrl.new_total = cand.replicas
            ctrl.update_policy(cand.policy)
            if active is not None:
                ctrl.old_total = active.replicas

            healthy_new = sum(
                1 for i in instances if i.revision == cand.revision and i.running and i.healthy is True
            )
            state = ctrl.observe(healthy_new)

            if state == COMPLETE:
                del self._controllers[d.app]
                self.store.promote(d.app, cand.revision)
                return {cand.revision: (cand, cand.replicas)}

            if state in (ROLLED_BACK, ABORTED):
                del self._controllers[d.app]
                self._finish_failed(ctrl.status)
                return {active.revision: (active, active.replicas)} if active else {}

            new, old = ctrl.target_split()
            targets: Targets = {cand.revision: (cand, new)}
            if active is not None:
                targets[active.revision] = (active, old)
            return targets

    def _count_candidate_failures(self, d: DesiredState, actions: list[Action]) -> bool:
        """Count candidate failures in the planned actions; True if they rolled the rollout back."""
        if d.candidate is None:
            return False
        with self._lock:
            ctrl = self._controllers.get(d.app)
            if ctrl is None:
                return False
            for a in actions:
                if a.revision != d.candidate.revision:
                    continue
                if a.kind == REPLACE or (a.kind == REMOVE and a.reason == "stopped"):
                    ctrl.record_failure(a.reason)
            if ctrl.state in (ROLLED_BACK, ABORTED):
                del self._controllers[d.app]
                self._finish_failed(ctrl.status)
                return True
            return False

    def _finish_failed(self, st: RolloutStatus) -> None:
        self.store.fail_candidate(st.app, st.to_revision)
        if st.state == ROLLED_BACK:
            subject, body = alerts.rollout_alert(st)
            self.notify(subject, body)

    def rollouts(self, app: str | None = None) -> list[RolloutStatus]:
        return self.runtime.list_rollouts(app)

    def get_rollout(self, rollout_id: str) -> RolloutStatus:
        st = self.runtime.get_rollout(rollout_id)
        if st is None:
            raise KeyError(rollout_id)
        return st

    def _controller(self, rollout_id: str) -> RolloutController | None:
        for ctrl in self._controllers.values():
            if ctrl.id == rollout_id:
                return ctrl
        return None

    def continue_rollout(self, rollout_id: str) -> RolloutStatus:
        with self._lock:
            ctrl = self._controller(rollout_id)
            if ctrl is None:
                return self.get_rollout(rollout_id)
            return ctrl.resume()

    def abort_rollout(self, rollout_id: str, reason: str = "aborted by operator") -> RolloutStatus:
        with self._lock:
            ctrl = self._controller(rollout_id)
            if ctrl is None:
                return self.get_rollout(rollout_id)
            ctrl.abort(reason)
            del self._controllers[ctrl.app]
            self._finish_failed(ctrl.status)
            return ctrl.status

    # -- events -----------------------------------------------------------

    def _on_change(self, ev: ChangeEvent) -> None:
        inst = ev.instance
        if ev.kind == "added":
            self.store.log_event("INFO", f"Observed instance {inst.name}", app=inst.app, revision=inst.revision)
        elif ev.kind == "removed":
            self.store.log_event("INFO", f"Instance {inst.name} is gone", app=inst.app, revision=inst.revision)
        elif ev.kind == "stopped":
            self.store.log_event("WARN", f"Instance {inst.name} stopped", app=inst.app, revision=inst.revision)
            self.notify(*alerts.instance_alert(ev))
        elif ev.kind == "unhealthy":
            self.store.log_event(
                "WARN", f"Instance {inst.name} became unhealthy: {ev.detail}", app=inst.app, revision=inst.revision
            )
            self.notify(*alerts.instance_alert(ev))
        elif ev.kind == "recovered":
            self.store.log_event("INFO", f"Instance {inst.name} recovered", app=inst.app, revision=inst.revision)
            self.notify(*alerts.instance_alert(ev))
