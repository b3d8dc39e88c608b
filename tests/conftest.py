import os
import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import examples...` works reliably across environments)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dorc.cluster import ContainerRef, TransientClusterError, instance_name
from dorc.executor import ActionExecutor
from dorc.health import ProbeResult
from dorc.observer import ClusterObserver
from dorc.reconciler import Reconciler
from dorc.runtime import RuntimeState
from dorc.store import DesiredStateStore


class FakeCluster:
    """In-memory stand-in for the Docker-backed cluster."""

    def __init__(self):
        self.containers = {}
        self.errors = []  # raised, in order, by the next create/remove calls
        self.calls = []
        self.unavailable = False
        self._seq = 0

    def list_instances(self, app=None):
        if self.unavailable:
            raise TransientClusterError("docker daemon unreachable")
        return [c for c in self.containers.values() if app is None or c.app == app]

    def create_instance(self, app, revision, slot, image, internal_port, env=None):
        self.calls.append(("create", app, revision, slot))
        if self.errors:
            raise self.errors.pop(0)
        name = instance_name(app, revision, slot)
        for c in list(self.containers.values()):
            if c.name == name:
                if c.running:
                    return c
                del self.containers[c.id]
        self._seq += 1
        ref = ContainerRef(
            id=f"c{self._seq}", name=name, app=app, revision=revision, slot=slot, image=image, running=True
        )
        self.containers[ref.id] = ref
        return ref

    def remove_instance(self, instance_id):
        self.calls.append(("remove", instance_id))
        if self.errors:
            raise self.errors.pop(0)
        self.containers.pop(instance_id, None)

    def base_url(self, ref, internal_port):
        return f"http://{ref.name}:{internal_port}"

    # helpers for tests
    def stop(self, instance_id):
        self.containers[instance_id] = replace(self.containers[instance_id], running=False)

    def running(self, app=None, revision=None):
        return sorted(
            (
                c
                for c in self.containers.values()
                if c.running and (app is None or c.app == app) and (revision is None or c.revision == revision)
            ),
            key=lambda c: (c.revision, c.slot),
        )


class FakeProber:
    """Healthy unless the probed URL contains one of the `unhealthy` markers."""

    def __init__(self):
        self.unhealthy = set()
        self.urls = []

    def __call__(self, url, timeout_s=2.0):
        self.urls.append(url)
        if any(marker in url for marker in self.unhealthy):
            return ProbeResult(False, "HTTP 503", 1.5)
        return ProbeResult(True, "Healthy", 1.5)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def store(tmp_path):
    s = DesiredStateStore(str(tmp_path / "dorc.db"))
    s.init()
    return s


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime():
    return RuntimeState()


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def observer(cluster, store, runtime, prober):
    return ClusterObserver(cluster, store, runtime, prober)


@pytest.fixture
def executor(cluster, store):
    return ActionExecutor(cluster, store, attempts=3, wait_min_s=0, wait_max_s=0)


@pytest.fixture
def reconciler(store, observer, executor, runtime, clock, notifications):
    def notify(subject, body):
        notifications.append(subject)
        return True

    return Reconciler(store, observer, executor, runtime, poll_interval_s=1, clock=clock, notify=notify)
