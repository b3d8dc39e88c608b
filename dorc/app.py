from __future__ import annotations

import secrets
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import __version__
from .api_models import AbortRequest, ApplyRequest, ScaleRequest
from .cluster import DockerCluster
from .executor import ActionExecutor
from .health import HealthProber
from .logs import configure_logging
from .observer import ClusterObserver
from .reconciler import Reconciler
from .runtime import RuntimeState
from .settings import settings
from .store import DesiredStateStore


def build_reconciler(store: DesiredStateStore) -> Reconciler:
    """Wire the control loop against the local Docker Engine."""
    runtime = RuntimeState()
    cluster = DockerCluster()
    observer = ClusterObserver(cluster, store, runtime, HealthProber())
    executor = ActionExecutor(cluster, store)
    return Reconciler(store, observer, executor, runtime)


def create_app(
    store: DesiredStateStore | None = None,
    reconciler: Reconciler | None = None,
    run_loop: bool = True,
    api_user: str | None = settings.api_user,
    api_password: str | None = settings.api_password,
) -> FastAPI:
    store = store or DesiredStateStore()
    app = FastAPI(title="dorc deployment orchestrator", version=__version__)
    app.state.store = store
    app.state.reconciler = reconciler
    security = HTTPBasic(auto_error=False)

    def require_user(credentials: HTTPBasicCredentials | None = Depends(security)) -> str | None:
        if not (api_user and api_password):
            return None
        if credentials is None or not (
            secrets.compare_digest(credentials.username, api_user)
            and secrets.compare_digest(credentials.password, api_password)
        ):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    def get_reconciler() -> Reconciler:
        rec = app.state.reconciler
        if rec is None:
            raise HTTPException(status_code=503, detail="Reconciler not running")
        return rec

    @app.on_event("startup")
    def startup() -> None:
        configure_logging()
        store.init()
        if app.state.reconciler is None:
            app.state.reconciler = build_reconciler(store)
        if run_loop:
            app.state.reconciler.start()

    @app.on_event("shutdown")
    def shutdown() -> None:
        if app.state.reconciler is not None:
            app.state.reconciler.stop(timeout=5)

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "healthy", "version": __version__}

    router = APIRouter(dependencies=[Depends(require_user)])

    def _app_view(name: str) -> dict[str, Any]:
        desired = store.desired(name)
        if desired is None:
            raise HTTPException(status_code=404, detail=f"Unknown application '{name}'")
        out = desired.to_dict()
        rec = app.state.reconciler
        if rec is not None:
            instances = sorted(rec.observer.snapshot(name), key=lambda i: (i.revision, i.slot))
            out["instances"] = [asdict(i) for i in instances]
            out["rollouts"] = [asdict(r) for r in rec.rollouts(name)]
        return out

    @router.get("/apps")
    def list_apps() -> list[dict[str, Any]]:
        return [_app_view(a.name) for a in store.list_apps()]

    @router.post("/apps")
    def apply_app(req: ApplyRequest) -> dict[str, Any]:
        try:
            result = store.apply(req.to_spec())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return asdict(result)

    @router.get("/apps/{name}")
    def get_app(name: str) -> dict[str, Any]:
        return _app_view(name)

    @router.delete("/apps/{name}")
    def delete_app(name: str) -> dict[str, str]:
        try:
            store.delete(name)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown application '{name}'")
        return {"deleted": name}

    @router.post("/apps/{name}/scale")
    def scale_app(name: str, req: ScaleRequest) -> dict[str, Any]:
        try:
            return store.scale(name, req.replicas).to_dict()
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown application '{name}'")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.get("/apps/{name}/history")
    def app_history(name: str) -> list[dict[str, Any]]:
        if store.desired(name) is None:
            raise HTTPException(status_code=404, detail=f"Unknown application '{name}'")
        return [r.to_dict() for r in store.history(name)]

    @router.post("/apps/{name}/rollback")
    def rollback_app(name: str) -> dict[str, Any]:
        try:
            return asdict(store.rollback(name))
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown application '{name}'")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.get("/rollouts")
    def list_rollouts(
        app_name: str | None = Query(None, alias="app"), rec: Reconciler = Depends(get_reconciler)
    ) -> list[dict[str, Any]]:
        return [asdict(r) for r in rec.rollouts(app_name)]

    @router.get("/rollouts/{rollout_id}")
    def get_rollout(rollout_id: str, rec: Reconciler = Depends(get_reconciler)) -> dict[str, Any]:
        try:
            return asdict(rec.get_rollout(rollout_id))
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown rollout")

    @router.post("/rollouts/{rollout_id}/continue")
    def continue_rollout(rollout_id: str, rec: Reconciler = Depends(get_reconciler)) -> dict[str, Any]:
        try:
            return asdict(rec.continue_rollout(rollout_id))
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown rollout")

    @router.post("/rollouts/{rollout_id}/abort")
    def abort_rollout(
        rollout_id: str, req: AbortRequest | None = None, rec: Reconciler = Depends(get_reconciler)
    ) -> dict[str, Any]:
        reason = req.reason if req else "aborted by operator"
        try:
            return asdict(rec.abort_rollout(rollout_id, reason))
        except KeyError:
            raise HTTPException(status_code=404, detail="Unknown rollout")

    @router.get("/events")
    def events(limit: int = 100, app_name: str | None = Query(None, alias="app")) -> list[dict[str, Any]]:
        return store.latest_events(limit=max(1, min(1000, limit)), app=app_name)

    app.include_router(router)
    return app


app = create_app()
