import dataclasses
import os
import secrets
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

# Ensure project root is importable (so `import main` / `import services...` work reliably)
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fdp import db  # noqa: E402
from fdp.health import ProbeResult, check_health  # noqa: E402
from fdp.orchestrator import DeploymentConfig, LaunchedTask, Orchestrator  # noqa: E402
from fdp.pipeline import LocalPlatform, Pipeline, PipelineConfig  # noqa: E402
from fdp.proxy import create_proxy_app  # noqa: E402
from fdp.registry import LocalRegistry  # noqa: E402
from fdp.runtime import RuntimeState  # noqa: E402
from fdp.targets import HealthCheckConfig  # noqa: E402
from fdp.task_definition import parse_task_definition  # noqa: E402
from services.backend.app import app as backend_app  # noqa: E402


PROJECT_ROOT = _project_root
TASK_DEFINITION = os.path.join(PROJECT_ROOT, "deploy", "task-definition.json")
REGISTRY = "123456789012.dkr.ecr.us-east-1.amazonaws.com"


@pytest.fixture(autouse=True)
def fdp_db(tmp_path, monkeypatch):
    """Point the sqlite layer at an isolated file for every test."""
    monkeypatch.setattr(db, "settings", dataclasses.replace(db.settings, db_path=str(tmp_path / "fdp.db")))
    db.init_db()
    yield


@pytest.fixture
def backend_client():
    with TestClient(backend_app) as client:
        yield client


def _refusing_client() -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    return httpx.Client(transport=httpx.MockTransport(handler))


class FakeLauncher:
    """Runs each task as an in-process proxy -> backend stack.

    modes maps image uri -> "ok" | "down" | "header":
      ok     healthy backend behind the proxy
      down   proxy whose backend refuses connections
      header proxy that requires X-Api-Key on content routes
    """

    def __init__(self, backend_client: TestClient):
        self.backend_client = backend_client
        self.modes: dict[str, str] = {}
        self.clients: dict[str, TestClient] = {}
        self.started: list[str] = []
        self.stopped: set[str] = set()

    def start(self, service, revision, container_name) -> LaunchedTask:
        td = parse_task_definition(revision.definition)
        image = next(c.image for c in td.container_definitions if c.name == container_name)
        mode = self.modes.get(image, "ok")
        if mode == "down":
            proxy = create_proxy_app("http://backend", client=_refusing_client())
        elif mode == "header":
            proxy = create_proxy_app("http://backend", required_header="X-Api-Key", client=self.backend_client)
        else:
            proxy = create_proxy_app("http://backend", client=self.backend_client)
        task_id = f"task-{secrets.token_hex(4)}"
        self.clients[task_id] = TestClient(proxy)
        self.started.append(task_id)
        return LaunchedTask(task_id=task_id, container_id=f"cid-{task_id}", base_url=f"http://{task_id}")

    def stop(self, container_id: str) -> None:
        self.stopped.add(container_id.removeprefix("cid-"))

    def is_running(self, container_id: str) -> bool:
        return container_id.removeprefix("cid-") not in self.stopped

    def probe(self, url: str, config: HealthCheckConfig) -> ProbeResult:
        task_id = httpx.URL(url).host
        if task_id in self.stopped or task_id not in self.clients:
            return ProbeResult(False, None, "No response", None)
        return check_health(url, timeout_s=config.timeout_s, success_codes=config.success_codes, client=self.clients[task_id])


@pytest.fixture
def launcher(backend_client):
    return FakeLauncher(backend_client)


@pytest.fixture
def health_config():
    return HealthCheckConfig(
        path="/health",
        interval_s=2,
        timeout_s=1,
        healthy_threshold=2,
        unhealthy_threshold=2,
        deregistration_delay_s=0,
    )


@pytest.fixture
def registry():
    return LocalRegistry()


@pytest.fixture
def orchestrator(launcher, health_config, registry):
    runtime = RuntimeState(health_config, prober=launcher.probe)
    return Orchestrator(
        runtime,
        launcher,
        registry,
        container_name="web",
        config=DeploymentConfig(minimum_healthy_percent=100, maximum_percent=200, max_health_check_intervals=6),
        sleep=lambda s: None,
    )


def fake_builder(context: str, dockerfile: str, image_ref: str) -> str:
    return "sha256:" + secrets.token_hex(32)


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        registry=REGISTRY,
        repository="fargate-demo",
        cluster="local",
        service="web",
        task_definition_path=TASK_DEFINITION,
        container_name="web",
    )


@pytest.fixture
def platform(orchestrator, registry):
    return LocalPlatform(orchestrator, registry, builder=fake_builder, desired_count=2)


@pytest.fixture
def pipeline(platform, pipeline_config):
    return Pipeline(platform, pipeline_config)
