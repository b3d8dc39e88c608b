from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Iterable, Iterator

from .settings import settings

logger = logging.getLogger(__name__)
event_logger = logging.getLogger("dorc.events")

APP_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
IMAGE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._\-/:@]{0,254}$")

# Revision states
ACTIVE = "active"
CANDIDATE = "candidate"
RETIRED = "retired"
WITHDRAWN = "withdrawn"
FAILED = "failed"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def validate_app_name(name: str) -> None:
    if not APP_NAME_RE.match(name or ""):
        raise ValueError(
            "Invalid application name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_image(image: str) -> None:
    if not IMAGE_RE.match(image or ""):
        raise ValueError("Invalid image reference. Expected repo[:tag] or repo@digest without whitespace.")


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes only ever reach the workload itself.
    if not path.startswith("/"):
        raise ValueError("health path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health path must be a simple absolute path (no scheme, no '..').")


@dataclass(frozen=True)
class HealthCheck:
    path: str = "/health"
    timeout_s: float = 2.0
    failure_threshold: int = 2


@dataclass(frozen=True)
class RolloutPolicy:
    canary_percent: int = 10
    step_percent: int = 25
    step_interval_s: int = 15
    phase_timeout_s: int = 120
    max_failures: int = 3
    min_healthy_percent: int = 100
    auto: bool = True

    def steps(self) -> list[int]:
        """Target share of the new revision (percent) for each rollout phase."""
        canary = max(1, min(100, int(self.canary_percent)))
        step = max(1, min(100, int(self.step_percent)))
        steps = list(range(canary, 101, step))
        if steps[-1] != 100:
            steps.append(100)
        return steps


@dataclass(frozen=True)
class DeploymentSpec:
    name: str
    image: str
    internal_port: int
    replicas: int = 1
    health: HealthCheck = field(default_factory=HealthCheck)
    env: dict[str, str] = field(default_factory=dict)
    rollout: RolloutPolicy = field(default_factory=RolloutPolicy)

    def validate(self) -> None:
        validate_app_name(self.name)
        validate_image(self.image)
        validate_health_path(self.health.path)
        if not 1 <= int(self.internal_port) <= 65535:
            raise ValueError("internal_port must be between 1 and 65535.")
        if not 0 <= int(self.replicas) <= 100:
            raise ValueError("replicas must be between 0 and 100.")
        if self.health.timeout_s <= 0:
            raise ValueError("health timeout must be positive.")
        if self.health.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1.")


@dataclass(frozen=True)
class AppRow:
    id: int
    name: str
    created_at: str


@dataclass(frozen=True)
class RevisionRow:
    id: int
    app_id: int
    revision: int
    image: str
    internal_port: int
    health_path: str
    health_timeout_s: float
    failure_threshold: int
    env_json: str
    rollout_json: str
    replicas: int
    state: str
    created_at: str

    @property
    def env(self) -> dict[str, str]:
        return json.loads(self.env_json or "{}")

    @property
    def policy(self) -> RolloutPolicy:
        return RolloutPolicy(**json.loads(self.rollout_json or "{}"))

    @property
    def template(self) -> tuple[Any, ...]:
        """Everything that identifies a revision apart from its replica count."""
        return (
            self.image,
            self.internal_port,
            self.health_path,
            float(self.health_timeout_s),
            self.failure_threshold,
            self.env_json,
        )

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d.pop("env_json")
        d.pop("rollout_json")
        d["env"] = self.env
        d["rollout"] = asdict(self.policy)
        return d


@dataclass(frozen=True)
class DesiredState:
    app: str
    active: RevisionRow | None
    candidate: RevisionRow | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "app": self.app,
            "active": self.active.to_dict() if self.active else None,
            "candidate": self.candidate.to_dict() if self.candidate else None,
        }


@dataclass(frozen=True)
class ApplyResult:
    app: str
    revision: int
    outcome: str  # created|rollout|scaled|unchanged|reverted|aborted


def _env_json(env: dict[str, str]) -> str:
    return json.dumps({str(k): str(v) for k, v in (env or {}).items()}, sort_keys=True)


def _template_of(spec: DeploymentSpec) -> tuple[Any, ...]:
    return (
        spec.image,
        int(spec.internal_port),
        spec.health.path,
        float(spec.health.timeout_s),
        int(spec.health.failure_threshold),
        _env_json(spec.env),
    )


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


SCHEMA = """
CREATE TABLE IF NOT EXISTS applications (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL UNIQUE,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS revisions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  app_id INTEGER NOT NULL,
  revision INTEGER NOT NULL,
  image TEXT NOT NULL,
  internal_port INTEGER NOT NULL,
  health_path TEXT NOT NULL,
  health_timeout_s REAL NOT NULL,
  failure_threshold INTEGER NOT NULL,
  env_json TEXT NOT NULL,
  rollout_json TEXT NOT NULL,
  replicas INTEGER NOT NULL,
  state TEXT NOT NULL, -- active|candidate|retired|withdrawn|failed
  created_at TEXT NOT NULL,
  UNIQUE(app_id, revision),
  FOREIGN KEY(app_id) REFERENCES applications(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  ts TEXT NOT NULL,
  level TEXT NOT NULL,
  app TEXT,
  revision INTEGER,
  message TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_app ON events(app);
CREATE INDEX IF NOT EXISTS idx_revisions_app_id ON revisions(app_id);
"""


class DesiredStateStore:
    """Last-applied deployment specs keyed by application name, plus revision history and events."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or settings.db_path
        self._lock = RLock()

    def _resolve_db_path(self) -> str:
        """Return a file path usable by sqlite.

        When the state directory is bind-mounted into a container and the file
        did not exist beforehand, Docker creates a directory at that path. In
        that case the database file is placed inside it.
        """
        p = os.path.abspath(self.db_path)
        if os.path.isdir(p):
            p = os.path.join(p, "dorc.db")
        parent = os.path.dirname(p)
        if parent and not os.path.exists(parent):
            os.makedirs(parent, exist_ok=True)
        return p

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._resolve_db_path(), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def init(self) -> None:
        """Create tables if they do not exist."""
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    # -- events -----------------------------------------------------------

    def log_event(self, level: str, message: str, app: str | None = None, revision: int | None = None) -> None:
        level = level.upper()
        event_logger.log(
            getattr(logging, "WARNING" if level == "WARN" else level, logging.INFO),
            "%s%s",
            f"[{app}{'@r' + str(revision) if revision is not None else ''}] " if app else "",
            message,
        )
        with self.connect() as conn:
            conn.execute(
                "INSERT INTO events (ts, level, app, revision, message) VALUES (?, ?, ?, ?, ?)",
                (utc_now(), level, app, revision, message),
            )

    def latest_events(self, limit: int = 100, app: str | None = None) -> list[dict[str, Any]]:
        with self.connect() as conn:
            if app:
                rows = conn.execute(
                    "SELECT * FROM events WHERE app=? ORDER BY id DESC LIMIT ?", (app, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    # -- queries ----------------------------------------------------------

    def list_apps(self) -> list[AppRow]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM applications ORDER BY name").fetchall()
            return _rows_to_dataclass(rows, AppRow)

    def history(self, name: str) -> list[RevisionRow]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM revisions r
                JOIN applications a ON a.id = r.app_id
                WHERE a.name=?
                ORDER BY r.revision DESC
                """,
                (name,),
            ).fetchall()
            return _rows_to_dataclass(rows, RevisionRow)

    def get_revision(self, name: str, revision: int) -> RevisionRow | None:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT r.* FROM revisions r
                JOIN applications a ON a.id = r.app_id
                WHERE a.name=? AND r.revision=?
                """,
                (name, int(revision)),
            ).fetchone()
            return RevisionRow(**dict(row)) if row else None

    def desired(self, name: str) -> DesiredState | None:
        with self.connect() as conn:
            app = conn.execute("SELECT * FROM applications WHERE name=?", (name,)).fetchone()
            if not app:
                return None
            return self._desired(conn, AppRow(**dict(app)))

    def list_desired(self) -> list[DesiredState]:
        with self.connect() as conn:
            apps = _rows_to_dataclass(conn.execute("SELECT * FROM applications ORDER BY name").fetchall(), AppRow)
            return [self._desired(conn, a) for a in apps]

    def _desired(self, conn: sqlite3.Connection, app: AppRow) -> DesiredState:
        rows = _rows_to_dataclass(
            conn.execute(
                "SELECT * FROM revisions WHERE app_id=? AND state IN (?, ?)", (app.id, ACTIVE, CANDIDATE)
            ).fetchall(),
            RevisionRow,
        )
        active = next((r for r in rows if r.state == ACTIVE), None)
        candidate = next((r for r in rows if r.state == CANDIDATE), None)
        return DesiredState(app=app.name, active=active, candidate=candidate)

    # -- mutations --------------------------------------------------------

    def _get_or_create_app(self, conn: sqlite3.Connection, name: str) -> AppRow:
        row = conn.execute("SELECT * FROM applications WHERE name=?", (name,)).fetchone()
        if row:
            return AppRow(**dict(row))
        conn.execute("INSERT INTO applications (name, created_at) VALUES (?, ?)", (name, utc_now()))
        return AppRow(**dict(conn.execute("SELECT * FROM applications WHERE name=?", (name,)).fetchone()))

    def _insert_revision(
        self,
        conn: sqlite3.Connection,
        app: AppRow,
        template: tuple[Any, ...],
        rollout_json: str,
        replicas: int,
        state: str,
    ) -> RevisionRow:
        image, internal_port, health_path, health_timeout_s, failure_threshold, env_json = template
        (last,) = conn.execute("SELECT COALESCE(MAX(revision), 0) FROM revisions WHERE app_id=?", (app.id,)).fetchone()
        conn.execute(
            """
            INSERT INTO revisions (app_id, revision, image, internal_port, health_path, health_timeout_s,
                                   failure_threshold, env_json, rollout_json, replicas, state, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                app.id,
                last + 1,
                image,
                internal_port,
                health_path,
                health_timeout_s,
                failure_threshold,
                env_json,
                rollout_json,
                replicas,
                state,
                utc_now(),
            ),
        )
        row = conn.execute("SELECT * FROM revisions WHERE app_id=? AND revision=?", (app.id, last + 1)).fetchone()
        return RevisionRow(**dict(row))

    def apply(self, spec: DeploymentSpec) -> ApplyResult:
        """Record a desired deployment spec.

        The first revision of an application becomes active at once. A new
        template while an active revision exists becomes a candidate that the
        reconciler rolls out; re-applying the active template withdraws any
        candidate. Replica changes alone scale in place.
        """
        spec.validate()
        template = _template_of(spec)
        rollout_json = json.dumps(asdict(spec.rollout), sort_keys=True)
        replicas = int(spec.replicas)

        with self._lock, self.connect() as conn:
            app = self._get_or_create_app(conn, spec.name)
            current = self._desired(conn, app)
            active, candidate = current.active, current.candidate

            if active is None and candidate is None:
                rev = self._insert_revision(conn, app, template, rollout_json, replicas, ACTIVE)
                result = ApplyResult(spec.name, rev.revision, "created")
                message = f"Created revision {rev.revision} ({spec.image}, {replicas} replicas)"
            elif candidate is not None and candidate.template == template:
                conn.execute(
                    "UPDATE revisions SET replicas=?, rollout_json=? WHERE id=?", (replicas, rollout_json, candidate.id)
                )
                changed = candidate.replicas != replicas
                result = ApplyResult(spec.name, candidate.revision, "scaled" if changed else "unchanged")
                message = f"Candidate scaled to {replicas} replicas" if changed else "Candidate unchanged"
            elif active is not None and active.template == template:
                conn.execute("UPDATE revisions SET replicas=? WHERE id=?", (replicas, active.id))
                if candidate is not None:
                    conn.execute("UPDATE revisions SET state=? WHERE id=?", (WITHDRAWN, candidate.id))
                    result = ApplyResult(spec.name, active.revision, "reverted")
                    message = f"Candidate revision {candidate.revision} withdrawn; keeping revision {active.revision}"
                elif active.replicas != replicas:
                    result = ApplyResult(spec.name, active.revision, "scaled")
                    message = f"Scaled from {active.replicas} to {replicas} replicas"
                else:
                    result = ApplyResult(spec.name, active.revision, "unchanged")
                    message = "Desired state unchanged"
            else:
                if candidate is not None:
                    conn.execute("UPDATE revisions SET state=? WHERE id=?", (WITHDRAWN, candidate.id))
                rev = self._insert_revision(conn, app, template, rollout_json, replicas, CANDIDATE)
                result = ApplyResult(spec.name, rev.revision, "rollout")
                message = f"Created candidate revision {rev.revision} ({spec.image}, {replicas} replicas)"

        self.log_event("INFO", message, app=spec.name, revision=result.revision)
        return result

    def scale(self, name: str, replicas: int) -> DesiredState:
        if not 0 <= int(replicas) <= 100:
            raise ValueError("replicas must be between 0 and 100.")
        with self._lock:
            current = self.desired(name)
            if current is None:
                raise KeyError(name)
            for rev in (current.active, current.candidate):
                if rev is not None:
                    self.set_revision_replicas(rev.id, int(replicas))
        self.log_event("INFO", f"Scaled to {int(replicas)} replicas", app=name)
        return self.desired(name)  # type: ignore[return-value]

    def set_revision_state(self, revision_id: int, state: str) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE revisions SET state=? WHERE id=?", (state, revision_id))

    def set_revision_replicas(self, revision_id: int, replicas: int) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE revisions SET replicas=? WHERE id=?", (replicas, revision_id))

    def promote(self, name: str, revision: int) -> None:
        """Make a candidate revision the active one and retire the previous active."""
        with self._lock, self.connect() as conn:
            row = conn.execute(
                """
                SELECT r.* FROM revisions r JOIN applications a ON a.id = r.app_id
                WHERE a.name=? AND r.revision=? AND r.state=?
                """,
                (name, int(revision), CANDIDATE),
            ).fetchone()
            if not row:
                raise KeyError(f"{name}@r{revision} is not a candidate")
            cand = RevisionRow(**dict(row))
            conn.execute(
                "UPDATE revisions SET state=? WHERE app_id=? AND state=?", (RETIRED, cand.app_id, ACTIVE)
            )
            conn.execute("UPDATE revisions SET state=? WHERE id=?", (ACTIVE, cand.id))

    def fail_candidate(self, name: str, revision: int) -> bool:
        """Mark a candidate revision failed. Returns False if it is no longer a candidate."""
        with self._lock, self.connect() as conn:
            cur = conn.execute(
                """
                UPDATE revisions SET state=?
                WHERE state=? AND revision=? AND app_id=(SELECT id FROM applications WHERE name=?)
                """,
                (FAILED, CANDIDATE, int(revision), name),
            )
            return cur.rowcount > 0

    def rollback(self, name: str) -> ApplyResult:
        """Abort an in-flight rollout, or roll out the previous revision's template again."""
        with self._lock:
            current = self.desired(name)
            if current is None:
                raise KeyError(name)
            if current.candidate is not None:
                self.fail_candidate(name, current.candidate.revision)
                result = ApplyResult(name, current.candidate.revision, "aborted")
                message = f"Rollout of revision {current.candidate.revision} aborted by rollback request"
            else:
                if current.active is None:
                    raise ValueError(f"Application '{name}' has no active revision.")
                previous = next(
                    (
                        r
                        for r in self.history(name)
                        if r.state == RETIRED and r.revision < current.active.revision
                    ),
                    None,
                )
                if previous is None:
                    raise ValueError(f"Application '{name}' has no previous revision to roll back to.")
                with self.connect() as conn:
                    app = self._get_or_create_app(conn, name)
                    rev = self._insert_revision(
                        conn, app, previous.template, previous.rollout_json, current.active.replicas, CANDIDATE
                    )
                result = ApplyResult(name, rev.revision, "rollout")
                message = f"Rolling back to the template of revision {previous.revision} as revision {rev.revision}"
        self.log_event("WARN", message, app=name, revision=result.revision)
        return result

    def delete(self, name: str) -> None:
        with self._lock, self.connect() as conn:
            cur = conn.execute("DELETE FROM applications WHERE name=?", (name,))
            if cur.rowcount == 0:
                raise KeyError(name)
        self.log_event("INFO", "Application deleted; instances will be removed", app=name)
