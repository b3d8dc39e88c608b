from __future__ import annotations

import argparse
import json
import sys

import requests

from .settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _env_pairs(pairs: list[str]) -> dict[str, str]:
    env: dict[str, str] = {}
    for p in pairs:
        key, sep, value = p.partition("=")
        if not sep or not key:
            raise SystemExit(f"--env expects KEY=VALUE, got {p!r}")
        env[key] = value
    return env


def _show(r: requests.Response) -> int:
    try:
        _print(r.json())
    except ValueError:
        print(r.text)
    return 0 if r.ok else 1


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dorc", description="Deployment orchestrator CLI")
    p.add_argument("--api", default=f"http://localhost:{settings.api_port}", help="API base URL")
    p.add_argument("--user", default=settings.api_user, help="API user (HTTP basic auth)")
    p.add_argument("--password", default=settings.api_password, help="API password")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_serve = sub.add_parser("serve", help="Run the orchestrator API and control loop")
    s_serve.add_argument("--host", default=settings.api_host)
    s_serve.add_argument("--port", type=int, default=settings.api_port)

    sub.add_parser("apps", help="List applications with desired and observed state")

    s_apply = sub.add_parser("apply", help="Apply a desired deployment spec")
    s_apply.add_argument("--name", required=True)
    s_apply.add_argument("--image", required=True)
    s_apply.add_argument("--internal-port", type=int, required=True)
    s_apply.add_argument("--replicas", type=int, default=1)
    s_apply.add_argument("--health-path", default="/health")
    s_apply.add_argument("--health-timeout-s", type=float, default=2.0)
    s_apply.add_argument("--failure-threshold", type=int, default=2)
    s_apply.add_argument("--env", action="append", default=[], metavar="KEY=VALUE")
    s_apply.add_argument("--canary-percent", type=int, default=10)
    s_apply.add_argument("--step-percent", type=int, default=25)
    s_apply.add_argument("--step-interval-s", type=int, default=15)
    s_apply.add_argument("--phase-timeout-s", type=int, default=120, help="Seconds before an unhealthy phase rolls back")
    s_apply.add_argument("--max-failures", type=int, default=3)
    s_apply.add_argument("--min-healthy-percent", type=int, default=100)
    s_apply.add_argument(
        "--manual", action="store_true", help="Pause after each phase; advance with 'dorc continue <id>'"
    )

    s_scale = sub.add_parser("scale", help="Change the replica count")
    s_scale.add_argument("name")
    s_scale.add_argument("replicas", type=int)

    for cmd, text in (("rollback", "Abort a rollout or roll back to the previous revision"),
                      ("delete", "Delete an application and its instances"),
                      ("history", "Show revision history")):
        s = sub.add_parser(cmd, help=text)
        s.add_argument("name")

    s_roll = sub.add_parser("rollouts", help="List rollouts")
    s_roll.add_argument("--app")

    s_cont = sub.add_parser("continue", help="Advance a paused rollout")
    s_cont.add_argument("rollout_id")

    s_abort = sub.add_parser("abort", help="Abort a rollout")
    s_abort.add_argument("rollout_id")
    s_abort.add_argument("--reason", default="aborted by operator")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--app")
    return p


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.cmd == "serve":
        import uvicorn

        uvicorn.run("dorc.app:app", host=args.host, port=args.port)
        return 0

    base = args.api.rstrip("/")
    session = requests.Session()
    if args.user and args.password:
        session.auth = (args.user, args.password)

    if args.cmd == "apps":
        return _show(session.get(f"{base}/apps", timeout=10))

    if args.cmd == "apply":
        payload = {
            "name": args.name,
            "image": args.image,
            "internal_port": args.internal_port,
            "replicas": args.replicas,
            "health": {
                "path": args.health_path,
                "timeout_s": args.health_timeout_s,
                "failure_threshold": args.failure_threshold,
            },
            "env": _env_pairs(args.env),
            "rollout": {
                "canary_percent": args.canary_percent,
                "step_percent": args.step_percent,
                "step_interval_s": args.step_interval_s,
                "phase_timeout_s": args.phase_timeout_s,
                "max_failures": args.max_failures,
                "min_healthy_percent": args.min_healthy_percent,
                "auto": not args.manual,
            },
        }
        return _show(session.post(f"{base}/apps", json=payload, timeout=30))

    if args.cmd == "scale":
        return _show(session.post(f"{base}/apps/{args.name}/scale", json={"replicas": args.replicas}, timeout=30))

    if args.cmd == "rollback":
        return _show(session.post(f"{base}/apps/{args.name}/rollback", timeout=30))

    if args.cmd == "delete":
        return _show(session.delete(f"{base}/apps/{args.name}", timeout=30))

    if args.cmd == "history":
        return _show(session.get(f"{base}/apps/{args.name}/history", timeout=10))

    if args.cmd == "rollouts":
        params = {"app": args.app} if args.app else None
        return _show(session.get(f"{base}/rollouts", params=params, timeout=10))

    if args.cmd == "continue":
        return _show(session.post(f"{base}/rollouts/{args.rollout_id}/continue", timeout=30))

    if args.cmd == "abort":
        return _show(session.post(f"{base}/rollouts/{args.rollout_id}/abort", json={"reason": args.reason}, timeout=30))

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.app:
            params["app"] = args.app
        return _show(session.get(f"{base}/events", params=params, timeout=10))

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
