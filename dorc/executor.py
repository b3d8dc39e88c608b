from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .cluster import ClusterError, ContainerRef, TransientClusterError
from .settings import settings
from .store import DesiredStateStore

logger = logging.getLogger(__name__)

CREATE = "create"
REMOVE = "remove"
REPLACE = "replace"


@dataclass(frozen=True)
class Action:
    kind: str
    app: str
    revision: int
    slot: int
    image: str = ""
    internal_port: int = 0
    env: dict[str, str] = field(default_factory=dict, compare=False)
    instance_id: str | None = None
    reason: str = ""

    @property
    def key(self) -> str:
        key = f"{self.kind}:{self.app}:r{self.revision}:s{self.slot}"
        if self.kind == REMOVE and self.instance_id:
            key += f":{self.instance_id}"
        return key


@dataclass(frozen=True)
class ActionResult:
    action: Action
    ok: bool
    attempts: int
    instance_id: str | None = None
    error: str | None = None


class Cluster(Protocol):
    def create_instance(
        self,
        app: str,
        revision: int,
        slot: int,
        image: str,
        internal_port: int,
        env: dict[str, str] | None = None,
    ) -> ContainerRef: ...

    def remove_instance(self, instance_id: str) -> None: ...


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    sleep = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning("Attempt %d failed (%s), retrying in %.1fs", retry_state.attempt_number, exc, sleep)


class ActionExecutor:
    """Applies planned actions against the cluster with retry and exponential backoff.

    Only TransientClusterError is retried. A failing action is reported in
    its result and never aborts the rest of the batch.
    """

    def __init__(
        self,
        cluster: Cluster,
        store: DesiredStateStore | None = None,
        attempts: int | None = None,
        wait_min_s: float | None = None,
        wait_max_s: float | None = None,
    ):
        self.cluster = cluster
        self.store = store
        self.attempts = max(1, int(attempts if attempts is not None else settings.retry_attempts))
        self.wait_min_s = settings.retry_min_s if wait_min_s is None else wait_min_s
        self.wait_max_s = settings.retry_max_s if wait_max_s is None else wait_max_s

    def _retrying(self) -> Retrying:
        return Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.wait_min_s or 0, min=self.wait_min_s, max=self.wait_max_s),
            retry=retry_if_exception_type(TransientClusterError),
            before_sleep=_log_retry,
            reraise=True,
        )

    def execute(self, actions: list[Action]) -> list[ActionResult]:
        results: list[ActionResult] = []
        seen: set[str] = set()
        for action in actions:
            if action.key in seen:
                continue
            seen.add(action.key)
            results.append(self._execute_one(action))
        return results

    def _execute_one(self, action: Action) -> ActionResult:
        attempts = 0
        try:
            for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    instance_id = self._apply(action)
        except ClusterError as e:
            msg = f"{action.kind} {action.key} failed after {attempts} attempt(s): {e}"
            if self.store is not None:
                self.store.log_event("ERROR", msg, app=action.app, revision=action.revision)
            else:
                logger.error(msg)
            return ActionResult(action, ok=False, attempts=attempts, instance_id=action.instance_id, error=str(e))

        if self.store is not None:
            detail = f" ({action.reason})" if action.reason else ""
            self.store.log_event(
                "INFO", f"{action.kind} slot {action.slot}{detail}", app=action.app, revision=action.revision
            )
        return ActionResult(action, ok=True, attempts=attempts, instance_id=instance_id)

    def _apply(self, action: Action) -> str | None:
        if action.kind == REMOVE:
            if action.instance_id:
                self.cluster.remove_instance(action.instance_id)
            return action.instance_id
        if action.kind == REPLACE:
            if action.instance_id:
                self.cluster.remove_instance(action.instance_id)
            return self._create(action)
        if action.kind == CREATE:
            return self._create(action)
        raise ValueError(f"Unknown action kind: {action.kind}")

    def _create(self, action: Action) -> str:
        ref = self.cluster.create_instance(
            app=action.app,
            revision=action.revision,
            slot=action.slot,
            image=action.image,
            internal_port=action.internal_port,
            env=action.env,
        )
        return ref.id
