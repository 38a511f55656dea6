import base64
import importlib.util
import os

import httpx
import pytest
from fastapi.testclient import TestClient

from fdp import db
from fdp.api_models import PushEvent


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("fdp_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


def _basic_auth(user: str, password: str) -> dict:
    token = base64.b64encode(f"{user}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def _echo_host(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"target": request.url.host, "path": request.url.path})


@pytest.fixture
def main():
    project_root = os.path.dirname(os.path.dirname(__file__))
    return _import_main_module(project_root)


@pytest.fixture
def auth(main):
    return _basic_auth(main.settings.admin_user, main.settings.admin_password)


@pytest.fixture
def client(main, orchestrator, pipeline):
    lb = httpx.Client(transport=httpx.MockTransport(_echo_host))
    app = main.create_app(orchestrator, pipeline, lb_client=lb)
    with TestClient(app) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_push_hook_requires_basic_auth(client):
    r = client.post("/hooks/push", json={"ref": "refs/heads/main", "after": "abc123"})
    assert r.status_code == 401
    assert db.list_runs() == []


def test_push_hook_runs_pipeline(client, auth):
    r = client.post("/hooks/push", json={"ref": "refs/heads/main", "after": "abc123"}, headers=auth)
    assert r.status_code == 202
    run_id = r.json()["run_id"]

    run = client.get(f"/runs/{run_id}").json()
    assert run["state"] == "rollout-stable"
    assert run["image_tag"] == "abc123"
    assert run["task_revision"] == "fargate-demo:1"
    assert any("is stable" in e["message"] for e in run["events"])

    assert [r["id"] for r in client.get("/runs").json()] == [run_id]


def test_push_to_other_branch_is_ignored(client, auth):
    r = client.post("/hooks/push", json={"ref": "refs/heads/dev", "after": "abc123"}, headers=auth)
    assert r.status_code == 200
    assert r.json() == {"status": "ignored", "branch": "dev"}


def test_unknown_run(client):
    assert client.get("/runs/nope").status_code == 404


def test_services_revisions_and_deployments(client, pipeline):
    pipeline.run(PushEvent(ref="refs/heads/main", after="aaa111"))
    pipeline.run(PushEvent(ref="refs/heads/main", after="bbb222"))

    services = client.get("/services").json()
    assert services[0]["name"] == "web"
    assert services[0]["active_revision"] == 2
    assert services[0]["running_count"] == 2

    revs = client.get("/services/web/revisions").json()
    assert [(r["revision"], r["active"]) for r in revs] == [(2, True), (1, False)]
    assert revs[0]["images"][0].endswith("fargate-demo:bbb222")

    deps = client.get("/services/web/deployments").json()
    assert {d["state"] for d in deps} == {"completed"}
    assert client.get("/services/nope/revisions").status_code == 404


def test_target_group_view(client, pipeline):
    assert client.get("/target-groups/web").status_code == 404
    pipeline.run(PushEvent(ref="refs/heads/main", after="abc123"))
    body = client.get("/target-groups/web").json()
    assert body["health_check"]["path"] == "/health"
    assert {t["state"] for t in body["targets"]} == {"healthy"}


def test_load_balancer_round_robins_over_healthy_targets(client, pipeline):
    assert client.get("/lb/web/").status_code == 503

    pipeline.run(PushEvent(ref="refs/heads/main", after="abc123"))
    tasks = {t.task_id for t in db.list_tasks("web")}
    seen = [client.get("/lb/web/hello").json() for _ in range(4)]

    assert {s["target"] for s in seen} == tasks
    assert seen[0]["target"] != seen[1]["target"]
    assert seen[0]["path"] == "/hello"


def test_rollback(client, auth, pipeline):
    pipeline.run(PushEvent(ref="refs/heads/main", after="aaa111"))
    pipeline.run(PushEvent(ref="refs/heads/main", after="bbb222"))

    assert client.post("/services/web/rollback", json={"revision": 1}).status_code == 401
    assert client.post("/services/web/rollback", json={"revision": 9}, headers=auth).status_code == 404
    assert client.post("/services/web/rollback", json={"revision": 0}, headers=auth).status_code == 422

    r = client.post("/services/web/rollback", json={"revision": 1}, headers=auth)
    assert r.status_code == 202
    assert r.json()["previous_revision"] == 2

    assert db.get_service("web").active_revision == 1
    assert db.get_deployment(r.json()["id"]).state == "completed"
    assert {t.revision for t in db.list_tasks("web")} == {1}


def test_rollback_conflicts_with_running_deployment(client, auth, pipeline, orchestrator):
    pipeline.run(PushEvent(ref="refs/heads/main", after="aaa111"))
    orchestrator.runtime.begin_deploy("web")
    r = client.post("/services/web/rollback", json={"revision": 1}, headers=auth)
    assert r.status_code == 409


def test_events(client, pipeline):
    pipeline.run(PushEvent(ref="refs/heads/feature", after="abc123"))
    events = client.get("/events", params={"limit": 5}).json()
    assert events[0]["message"] == "Ignoring push to 'feature'"
