import pytest
import requests
from docker.errors import APIError, ImageNotFound, NotFound

from dorc.cluster import (
    DockerCluster,
    PermanentClusterError,
    TransientClusterError,
    instance_labels,
    instance_name,
)
from dorc.executor import CREATE, Action, ActionExecutor


class FakeContainer:
    def __init__(self, owner, cid, name, labels, status="running"):
        self.owner = owner
        self.id = cid
        self.name = name
        self.labels = labels
        self.status = status

    def reload(self):
        pass

    def remove(self, force=False):
        self.owner.items.pop(self.id, None)


class FakeContainers:
    def __init__(self):
        self.items = {}
        self.run_error = None
        self.run_kwargs = []
        self.seq = 0

    def list(self, all=False, filters=None):
        out = []
        for c in self.items.values():
            ok = True
            for f in (filters or {}).get("label", []):
                key, _, value = f.partition("=")
                if key not in c.labels or (value and c.labels[key] != value):
                    ok = False
            if ok:
                out.append(c)
        return out

    def get(self, id_or_name):
        for c in self.items.values():
            if id_or_name in (c.id, c.name):
                return c
        raise NotFound("No such container")

    def run(self, image, **kwargs):
        if self.run_error:
            raise self.run_error
        self.run_kwargs.append(kwargs)
        self.seq += 1
        cid = f"id{self.seq}"
        c = FakeContainer(self, cid, kwargs["name"], kwargs["labels"])
        self.items[cid] = c
        return c


class FakeNetworks:
    def __init__(self):
        self.created = []

    def get(self, name):
        if name not in self.created:
            raise NotFound("No such network")

    def create(self, name, driver=None):
        self.created.append(name)


class FakeDocker:
    def __init__(self):
        self.containers = FakeContainers()
        self.networks = FakeNetworks()

    def ping(self):
        return True


def _api_error(status):
    resp = requests.Response()
    resp.status_code = status
    return APIError("engine error", response=resp, explanation=f"status {status}")


@pytest.fixture
def engine():
    return FakeDocker()


@pytest.fixture
def docker_cluster(engine):
    return DockerCluster(network="dorc-test", client_factory=lambda: engine)


def test_create_starts_labeled_container_on_network(docker_cluster, engine):
    ref = docker_cluster.create_instance("web", 2, 1, "web:2", 8080, env={"MODE": "prod"})
    assert ref.name == "dorc-web-r2-1"
    assert (ref.app, ref.revision, ref.slot, ref.image, ref.running) == ("web", 2, 1, "web:2", True)
    assert engine.networks.created == ["dorc-test"]

    kwargs = engine.containers.run_kwargs[0]
    assert kwargs["network"] == "dorc-test"
    assert kwargs["labels"] == instance_labels("web", 2, 1, "web:2")
    assert kwargs["environment"] == {"MODE": "prod", "PORT": "8080"}
    assert kwargs["restart_policy"] == {"Name": "no"}


def test_create_adopts_running_container_with_same_name(docker_cluster, engine):
    first = docker_cluster.create_instance("web", 1, 0, "web:1", 8080)
    second = docker_cluster.create_instance("web", 1, 0, "web:1", 8080)
    assert first.id == second.id
    assert len(engine.containers.items) == 1


def test_create_replaces_stale_container_with_same_name(docker_cluster, engine):
    first = docker_cluster.create_instance("web", 1, 0, "web:1", 8080)
    engine.containers.items[first.id].status = "exited"
    second = docker_cluster.create_instance("web", 1, 0, "web:1", 8080)
    assert second.id != first.id
    assert list(engine.containers.items) == [second.id]


def test_list_parses_labels_and_skips_malformed(docker_cluster, engine):
    docker_cluster.create_instance("web", 1, 0, "web:1", 8080)
    docker_cluster.create_instance("api", 3, 2, "api:3", 9000)
    engine.containers.items["bad"] = FakeContainer(
        engine.containers, "bad", "stray", {"dorc.app": "web", "dorc.revision": "x"}
    )

    refs = docker_cluster.list_instances()
    assert sorted((r.app, r.revision, r.slot) for r in refs) == [("api", 3, 2), ("web", 1, 0)]
    assert [r.name for r in docker_cluster.list_instances(app="api")] == [instance_name("api", 3, 2)]


def test_remove_missing_container_is_a_no_op(docker_cluster):
    docker_cluster.remove_instance("does-not-exist")


def test_engine_errors_are_classified(docker_cluster, engine):
    engine.containers.run_error = ImageNotFound("pull access denied")
    with pytest.raises(PermanentClusterError):
        docker_cluster.create_instance("web", 1, 0, "nope:1", 8080)

    engine.containers.run_error = _api_error(500)
    with pytest.raises(TransientClusterError):
        docker_cluster.create_instance("web", 1, 0, "web:1", 8080)

    engine.containers.run_error = _api_error(400)
    with pytest.raises(PermanentClusterError):
        docker_cluster.create_instance("web", 1, 0, "web:1", 8080)


def test_unreachable_daemon_is_transient():
    def broken():
        raise requests.exceptions.ConnectionError("connection refused")

    cluster = DockerCluster(network="dorc-test", client_factory=broken)
    assert cluster.available() is False
    with pytest.raises(TransientClusterError):
        cluster.list_instances()


def test_base_url_uses_container_name(docker_cluster):
    ref = docker_cluster.create_instance("web", 1, 0, "web:1", 8080)
    assert docker_cluster.base_url(ref, 8080) == "http://dorc-web-r1-0:8080"


def test_missing_network_fails_actions_without_aborting_the_batch(docker_cluster, engine):
    docker_cluster.create_instance("web", 1, 0, "web:1", 8080)
    # Network deleted behind the orchestrator's back.
    engine.networks.created.clear()
    engine.containers.run_error = NotFound("network dorc-test not found")

    executor = ActionExecutor(docker_cluster, attempts=3, wait_min_s=0, wait_max_s=0)
    actions = [Action(CREATE, "web", 1, slot, image="web:1", internal_port=8080) for slot in (1, 2)]
    results = executor.execute(actions)
    assert [(r.ok, r.attempts) for r in results] == [(False, 1), (False, 1)]
    assert "not found" in results[0].error

    engine.containers.run_error = None
    ref = docker_cluster.create_instance("web", 1, 1, "web:1", 8080)
    assert ref.running is True
    assert engine.networks.created == ["dorc-test"]
