from __future__ import annotations

from pathlib import Path

from fdp.task_definition import container_port, load_task_definition

from conftest import PROJECT_ROOT


ROOT = Path(PROJECT_ROOT)


def _read(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def test_deploy_assets_exist() -> None:
    for rel in ("Dockerfile", "deploy/supervisord.conf", "deploy/task-definition.json", ".github/workflows/deploy.yml"):
        assert (ROOT / rel).exists(), f"missing {rel}"


def test_image_exposes_only_the_proxy_port() -> None:
    dockerfile = _read(ROOT / "Dockerfile")
    assert "EXPOSE 80" in dockerfile
    assert "EXPOSE 3000" not in dockerfile
    assert "supervisord" in dockerfile


def test_supervisor_runs_backend_and_proxy() -> None:
    conf = _read(ROOT / "deploy/supervisord.conf")
    assert "[program:backend]" in conf
    assert "services.backend.app:app --host 127.0.0.1 --port 3000" in conf
    assert "[program:proxy]" in conf
    assert "fdp.proxy:app --host 0.0.0.0 --port 80" in conf


def test_task_definition_template() -> None:
    td = load_task_definition(str(ROOT / "deploy/task-definition.json"))
    assert td.container_definitions[0].image == "<IMAGE_URI>"
    assert container_port(td, "web") == 80
    env = {kv.name: kv.value for kv in td.container_definitions[0].environment}
    assert env["FDP_BACKEND_URL"] == "http://127.0.0.1:3000"


def test_workflow_deploys_main_with_secrets() -> None:
    wf = _read(ROOT / ".github/workflows/deploy.yml")
    assert "branches: [main]" in wf
    assert "needs: test" in wf
    assert "python cli.py deploy --platform aws" in wf
    assert '--sha "${{ github.sha }}"' in wf
    for secret in ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "ECR_REPOSITORY", "ECS_CLUSTER", "ECS_SERVICE"):
        assert f"secrets.{secret}" in wf
