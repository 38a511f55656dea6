from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict

import requests

from fdp import db
from fdp.api_models import PushEvent
from fdp.aws import AwsPlatform
from fdp.health import check_health, parse_matcher
from fdp.orchestrator import DeploymentConfig, DockerTaskLauncher, Orchestrator
from fdp.pipeline import ROLLOUT_STABLE, LocalPlatform, Pipeline, PipelineConfig, Platform
from fdp.registry import LocalRegistry
from fdp.runtime import RuntimeState
from fdp.settings import settings
from fdp.targets import HealthCheckConfig
from fdp.task_definition import load_task_definition, render_task_definition, to_register_payload


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def build_platform(name: str) -> Platform:
    if name == "aws":
        return AwsPlatform(
            region=settings.aws_region,
            max_polls=settings.stable_max_polls,
            poll_interval_s=settings.stable_poll_interval_s,
        )
    if name != "local":
        raise ValueError(f"Unknown platform: {name!r}")
    registry = LocalRegistry()
    orchestrator = Orchestrator(
        RuntimeState(HealthCheckConfig.from_settings()),
        DockerTaskLauncher(),
        registry,
        container_name=settings.container_name,
        config=DeploymentConfig.from_settings(),
    )
    return LocalPlatform(orchestrator, registry, desired_count=settings.desired_count)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Fargate Deploy Pipeline CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    p.add_argument("--user", default=settings.admin_user)
    p.add_argument("--password", default=settings.admin_password)
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("services", help="List services")

    s_runs = sub.add_parser("runs", help="List pipeline runs")
    s_runs.add_argument("--limit", type=int, default=20)

    s_run = sub.add_parser("run", help="Show one pipeline run with its events")
    s_run.add_argument("run_id")

    s_rev = sub.add_parser("revisions", help="List task revisions of a service")
    s_rev.add_argument("--service", default=settings.service)

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_push = sub.add_parser("push", help="Send a push event to the API")
    s_push.add_argument("--sha", required=True)
    s_push.add_argument("--branch", default=settings.tracked_branch)

    s_rb = sub.add_parser("rollback", help="Roll a service back to an earlier task revision")
    s_rb.add_argument("--service", default=settings.service)
    s_rb.add_argument("--revision", type=int, required=True)

    s_dep = sub.add_parser("deploy", help="Run the pipeline in-process (used by CI)")
    s_dep.add_argument("--sha", required=True)
    s_dep.add_argument("--branch", default=settings.tracked_branch)
    s_dep.add_argument("--platform", choices=["local", "aws"], default=settings.platform)

    s_td = sub.add_parser("render-taskdef", help="Print the task definition rendered for an image")
    s_td.add_argument("--image", required=True)
    s_td.add_argument("--path", default=settings.task_definition_path)
    s_td.add_argument("--container", default=settings.container_name)

    s_probe = sub.add_parser("probe", help="Probe a health endpoint like the load balancer does")
    s_probe.add_argument("url")
    s_probe.add_argument("--timeout", type=float, default=settings.health_check_timeout_s)
    s_probe.add_argument("--matcher", default=settings.health_check_matcher)

    args = p.parse_args(argv)

    base = args.api.rstrip("/")
    auth = (args.user, args.password)

    if args.cmd == "services":
        r = requests.get(f"{base}/services", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "runs":
        r = requests.get(f"{base}/runs", params={"limit": args.limit}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "run":
        r = requests.get(f"{base}/runs/{args.run_id}", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "revisions":
        r = requests.get(f"{base}/services/{args.service}/revisions", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "events":
        r = requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "push":
        payload = {"ref": f"refs/heads/{args.branch}", "after": args.sha}
        r = requests.post(f"{base}/hooks/push", json=payload, auth=auth, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "rollback":
        r = requests.post(
            f"{base}/services/{args.service}/rollback", json={"revision": args.revision}, auth=auth, timeout=30
        )
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "deploy":
        db.init_db()
        pipeline = Pipeline(build_platform(args.platform), PipelineConfig.from_settings())
        run = pipeline.run(PushEvent(ref=f"refs/heads/{args.branch}", after=args.sha))
        if run is None:
            _print({"status": "ignored", "branch": args.branch})
            return 0
        _print({**asdict(run), "events": list(reversed(db.latest_events(limit=100, ref=run.id)))})
        return 0 if run.state == ROLLOUT_STABLE else 1

    if args.cmd == "render-taskdef":
        td = render_task_definition(load_task_definition(args.path), args.container, args.image)
        _print(to_register_payload(td))
        return 0

    if args.cmd == "probe":
        result = check_health(args.url, timeout_s=args.timeout, success_codes=parse_matcher(args.matcher))
        _print(asdict(result))
        return 0 if result.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
