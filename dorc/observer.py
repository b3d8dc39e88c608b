from __future__ import annotations

import logging
from typing import Callable, Protocol

from .cluster import ContainerRef
from .health import HealthProber, ProbeResult
from .runtime import ChangeEvent, Instance, ObservedState, RuntimeState
from .store import DesiredStateStore, RevisionRow

logger = logging.getLogger(__name__)

Prober = Callable[[str, float], ProbeResult]
Listener = Callable[[ChangeEvent], None]


class Cluster(Protocol):
    def list_instances(self, app: str | None = None) -> list[ContainerRef]: ...

    def base_url(self, ref: ContainerRef, internal_port: int) -> str: ...


class ClusterObserver:
    """Polls live state, probes health and emits change events.

    Each poll returns a full snapshot; listeners receive the differences
    against the previous snapshot.
    """

    def __init__(
        self,
        cluster: Cluster,
        store: DesiredStateStore,
        runtime: RuntimeState,
        prober: Prober | None = None,
    ):
        self.cluster = cluster
        self.store = store
        self.runtime = runtime
        self.prober: Prober = prober or HealthProber()
        self._listeners: list[Listener] = []
        self._previous: dict[str, Instance] = {}

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def snapshot(self, app: str | None = None) -> list[Instance]:
        """Instances seen by the latest poll."""
        return [i for i in self._previous.values() if app is None or i.app == app]

    def poll(self) -> ObservedState:
        """Take a snapshot of the cluster. Raises ClusterError if it cannot be listed."""
        refs = self.cluster.list_instances()
        revisions: dict[tuple[str, int], RevisionRow | None] = {}
        observed = ObservedState()
        current: dict[str, Instance] = {}

        for ref in refs:
            key = (ref.app, ref.revision)
            if key not in revisions:
                revisions[key] = self.store.get_revision(ref.app, ref.revision)
            inst = self._observe(ref, revisions[key])
            observed.add(inst)
            current[inst.id] = inst

        events = self._diff(self._previous, current)
        self._previous = current
        for ev in events:
            self._emit(ev)
        return observed

    def _observe(self, ref: ContainerRef, rev: RevisionRow | None) -> Instance:
        inst = Instance(
            id=ref.id,
            name=ref.name,
            app=ref.app,
            revision=ref.revision,
            slot=ref.slot,
            image=ref.image,
            running=ref.running,
        )
        if not ref.running:
            inst.healthy = False
            inst.message = "Not running"
            return inst
        if rev is None:
            # Unknown revision: reported for garbage collection only.
            inst.message = "Unknown revision"
            return inst

        url = f"{self.cluster.base_url(ref, rev.internal_port)}{rev.health_path}"
        res = self.prober(url, rev.health_timeout_s)
        _, fail_count = self.runtime.mark_health(ref.id, res.ok)
        inst.healthy = res.ok
        inst.latency_ms = res.latency_ms
        inst.message = res.message
        inst.fail_count = fail_count
        return inst

    def _diff(self, previous: dict[str, Instance], current: dict[str, Instance]) -> list[ChangeEvent]:
        events: list[ChangeEvent] = []
        for iid, inst in current.items():
            prev = previous.get(iid)
            if prev is None:
                events.append(ChangeEvent("added", inst))
                continue
            if prev.running and not inst.running:
                events.append(ChangeEvent("stopped", inst, inst.message))
            elif prev.healthy is True and inst.healthy is False:
                events.append(ChangeEvent("unhealthy", inst, inst.message))
            elif prev.healthy is False and inst.healthy is True:
                events.append(ChangeEvent("recovered", inst, inst.message))
        for iid, prev in previous.items():
            if iid not in current:
                self.runtime.forget(iid)
                events.append(ChangeEvent("removed", prev))
        return events

    def _emit(self, ev: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(ev)
            except Exception:
                logger.exception("Change listener failed for %s event on %s", ev.kind, ev.instance.name)
