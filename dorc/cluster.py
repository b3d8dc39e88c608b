from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from .settings import settings

logger = logging.getLogger(__name__)

LABEL_APP = "dorc.app"
LABEL_REVISION = "dorc.revision"
LABEL_SLOT = "dorc.slot"
LABEL_IMAGE = "dorc.image"


class ClusterError(Exception):
    pass


class TransientClusterError(ClusterError):
    """The runtime could not be reached or failed server-side; worth retrying."""


class PermanentClusterError(ClusterError):
    """The request itself is wrong (e.g. unknown image); retrying will not help."""


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    app: str
    revision: int
    slot: int
    image: str
    running: bool


def instance_name(app: str, revision: int, slot: int) -> str:
    return f"dorc-{app}-r{int(revision)}-{int(slot)}"


def instance_labels(app: str, revision: int, slot: int, image: str) -> dict[str, str]:
    return {
        LABEL_APP: app,
        LABEL_REVISION: str(int(revision)),
        LABEL_SLOT: str(int(slot)),
        LABEL_IMAGE: image,
    }


@contextmanager
def _translate_errors(what: str) -> Iterator[None]:
    try:
        yield
    except ImageNotFound as e:
        raise PermanentClusterError(f"{what}: image not found ({e.explanation or e})") from e
    except NotFound as e:
        raise PermanentClusterError(f"{what}: not found ({e.explanation or e})") from e
    except APIError as e:
        if e.is_server_error():
            raise TransientClusterError(f"{what}: {e.explanation or e}") from e
        raise PermanentClusterError(f"{what}: {e.explanation or e}") from e
    except (DockerException, requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
        raise TransientClusterError(f"{what}: {type(e).__name__}: {e}") from e


class DockerCluster:
    """Cluster API over a local Docker Engine.

    Instances are containers labeled with their application, revision and
    slot so they can be re-discovered after the orchestrator restarts.
    """

    def __init__(self, network: str | None = None, client_factory: Callable[[], Any] = docker.from_env):
        self.network = network or settings.docker_network
        self._client_factory = client_factory
        self._client: Any = None
        self._network_ready = False

    def _docker(self) -> Any:
        if self._client is None:
            with _translate_errors("connect"):
                self._client = self._client_factory()
        return self._client

    def available(self) -> bool:
        try:
            self._docker().ping()
            return True
        except (ClusterError, DockerException, requests.exceptions.RequestException):
            return False

    def ensure_network(self) -> None:
        if self._network_ready:
            return
        c = self._docker()
        with _translate_errors("ensure network"):
            try:
                c.networks.get(self.network)
            except NotFound:
                c.networks.create(self.network, driver="bridge")
                logger.info("Created docker network '%s'", self.network)
        self._network_ready = True

    @staticmethod
    def _to_ref(container: Any) -> ContainerRef | None:
        labels = container.labels or {}
        try:
            revision = int(labels[LABEL_REVISION])
            slot = int(labels[LABEL_SLOT])
            app = labels[LABEL_APP]
        except (KeyError, ValueError):
            return None
        return ContainerRef(
            id=container.id,
            name=container.name,
            app=app,
            revision=revision,
            slot=slot,
            image=labels.get(LABEL_IMAGE, ""),
            running=container.status == "running",
        )

    def list_instances(self, app: str | None = None) -> list[ContainerRef]:
        label_filter = [f"{LABEL_APP}={app}"] if app else [LABEL_APP]
        with _translate_errors("list containers"):
            containers = self._docker().containers.list(all=True, filters={"label": label_filter})
        out: list[ContainerRef] = []
        for x in containers:
            ref = self._to_ref(x)
            if ref is None:
                logger.warning("Ignoring container %s with malformed dorc labels", x.name)
                continue
            out.append(ref)
        return out

    def create_instance(
        self,
        app: str,
        revision: int,
        slot: int,
        image: str,
        internal_port: int,
        env: dict[str, str] | None = None,
    ) -> ContainerRef:
        """Create and start an instance. Re-creating an existing running instance adopts it."""
        self.ensure_network()
        name = instance_name(app, revision, slot)
        labels = instance_labels(app, revision, slot, image)
        c = self._docker()

        existing = self._get(name)
        if existing is not None:
            ref = self._to_ref(existing)
            if ref is not None and ref.running and ref.image == image and ref.app == app:
                logger.info("Adopting existing container %s", name)
                return ref
            self.remove_instance(existing.id)

        try:
            with _translate_errors(f"run {name}"):
                container = c.containers.run(
                    image,
                    detach=True,
                    name=name,
                    environment={**(env or {}), "PORT": str(int(internal_port))},
                    network=self.network,
                    labels=labels,
                    # Self-healing is done by the reconciler; keep Docker's restart policy off.
                    restart_policy={"Name": "no"},
                )
                container.reload()
        except ClusterError:
            # Re-check the network on the next create; it may have been removed externally.
            self._network_ready = False
            raise
        logger.info("Started container %s from image %s", name, image)
        return ContainerRef(
            id=container.id,
            name=name,
            app=app,
            revision=int(revision),
            slot=int(slot),
            image=image,
            running=container.status == "running",
        )

    def _get(self, id_or_name: str) -> Any:
        with _translate_errors(f"inspect {id_or_name}"):
            try:
                return self._docker().containers.get(id_or_name)
            except NotFound:
                return None

    def remove_instance(self, instance_id: str) -> None:
        with _translate_errors(f"remove {instance_id}"):
            try:
                self._docker().containers.get(instance_id).remove(force=True)
            except NotFound:
                return

    def base_url(self, ref: ContainerRef, internal_port: int) -> str:
        """HTTP base URL usable from within the same docker network."""
        return f"http://{ref.name}:{int(internal_port)}"
