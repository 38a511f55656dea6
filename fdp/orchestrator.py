from __future__ import annotations

import math
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from . import db, docker_ops
from .api_models import TaskDefinition
from .db import DeploymentRow, ServiceRow, TaskRevisionRow, TaskRow
from .registry import LocalRegistry
from .runtime import RuntimeState
from .settings import settings
from .targets import HEALTHY, UNUSED, TargetGroup
from .task_definition import container_port, images_of, parse_task_definition, to_register_payload


@dataclass(frozen=True)
class DeploymentConfig:
    minimum_healthy_percent: int = 100
    maximum_percent: int = 200
    max_health_check_intervals: int = 20

    def __post_init__(self) -> None:
        if not 0 < self.minimum_healthy_percent <= 100:
            raise ValueError("minimum_healthy_percent must be in 1..100.")
        if self.maximum_percent < 100:
            raise ValueError("maximum_percent must be at least 100.")
        if self.maximum_percent == 100 and self.minimum_healthy_percent == 100:
            raise ValueError("A rolling update needs maximum_percent > 100 or minimum_healthy_percent < 100.")
        if self.max_health_check_intervals < 1:
            raise ValueError("max_health_check_intervals must be positive.")

    @classmethod
    def from_settings(cls) -> "DeploymentConfig":
        return cls(
            minimum_healthy_percent=settings.minimum_healthy_percent,
            maximum_percent=settings.maximum_percent,
            max_health_check_intervals=settings.max_health_check_intervals,
        )


@dataclass(frozen=True)
class LaunchedTask:
    task_id: str
    container_id: str
    base_url: str


class DockerTaskLauncher:
    """Runs a task's load-balanced container on the local docker daemon."""

    def start(self, service: str, revision: TaskRevisionRow, container_name: str) -> LaunchedTask:
        td = parse_task_definition(revision.definition)
        port = container_port(td, container_name)
        cdef = next(c for c in td.container_definitions if c.name == container_name)
        env = {kv.name: kv.value for kv in cdef.environment}
        ref = docker_ops.create_task_container(service, revision.revision, cdef.image, env=env)
        return LaunchedTask(task_id=ref.name, container_id=ref.id, base_url=docker_ops.container_http_base(ref.name, port))

    def stop(self, container_id: str) -> None:
        docker_ops.remove_container(container_id, force=True)

    def is_running(self, container_id: str) -> bool:
        return docker_ops.container_is_running(container_id)


class Orchestrator:
    """Runs services as replicated tasks and performs health-gated rolling updates."""

    def __init__(
        self,
        runtime: RuntimeState,
        launcher: DockerTaskLauncher,
        registry: LocalRegistry,
        container_name: str,
        config: DeploymentConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runtime = runtime
        self.launcher = launcher
        self.registry = registry
        self.container_name = container_name
        self.config = config
        self.sleep = sleep

    # --- task definitions & services ---

    def register_task_definition(self, td: TaskDefinition) -> TaskRevisionRow:
        row = db.register_task_revision(td.family, images_of(td), to_register_payload(td))
        db.log_event("INFO", f"Registered task definition {row.name}", ref=row.name)
        return row

    def create_service(self, name: str, family: str, desired_count: int, cluster: str = "local") -> ServiceRow:
        docker_ops.validate_service_name(name)
        if desired_count < 1:
            raise ValueError("desired_count must be at least 1.")
        return db.get_or_create_service(name, cluster, family, desired_count)

    def _service(self, name: str) -> ServiceRow:
        svc = db.get_service(name)
        if not svc:
            raise KeyError(f"unknown service '{name}'")
        return svc

    def _revision(self, svc: ServiceRow, revision: int) -> TaskRevisionRow:
        rev = db.get_task_revision(svc.family, revision)
        if not rev:
            raise KeyError(f"unknown task revision {svc.family}:{revision}")
        return rev

    # --- deployments ---

    def update_service(self, service: str, revision: int) -> DeploymentRow:
        """Create a deployment of revision for service. Run it with run_deployment()."""
        svc = self._service(service)
        rev = self._revision(svc, revision)
        missing = [img for img in rev.image_list if not self.registry.has_uri(img)]
        if missing:
            raise ValueError(f"Images not present in the registry: {', '.join(missing)}")
        if not self.runtime.begin_deploy(service):
            raise RuntimeError(f"A deployment is already in progress for '{service}'.")
        dep = db.insert_deployment(secrets.token_hex(6), service, rev.revision, svc.active_revision)
        db.log_event("INFO", f"Deployment {dep.id} created for {rev.name}", service_name=service, ref=dep.id)
        return dep

    def rollback(self, service: str, revision: int) -> DeploymentRow:
        dep = self.update_service(service, revision)
        return self.run_deployment(dep.id)

    def run_deployment(self, deployment_id: str) -> DeploymentRow:
        dep = db.get_deployment(deployment_id)
        if not dep:
            raise KeyError("unknown deployment")
        try:
            if dep.state == "in_progress":
                with self.runtime.service_lock(dep.service_name):
                    self._roll(dep)
        finally:
            self.runtime.end_deploy(dep.service_name)
        out = db.get_deployment(deployment_id)
        if out is None:
            raise KeyError("unknown deployment")
        return out

    def _roll(self, dep: DeploymentRow) -> None:
        service = dep.service_name
        svc = self._service(service)
        rev = self._revision(svc, dep.revision)
        tg = self.runtime.target_group(service)
        desired = svc.desired_count
        min_healthy = math.ceil(desired * self.config.minimum_healthy_percent / 100)
        max_running = max(desired, math.floor(desired * self.config.maximum_percent / 100))

        old: list[TaskRow] = db.list_tasks(service)
        new: list[TaskRow] = []
        draining: list[TaskRow] = []
        promoted = False
        interval = 0

        while interval < self.config.max_health_check_intervals or promoted:
            while len(new) < desired and len(old) + len(new) < max_running:
                new.append(self._launch(service, rev))

            tg.probe_all()
            draining = self._stop_expired(tg, draining)

            healthy_new = [t for t in new if tg.state_of(t.task_id) == HEALTHY]
            healthy_old = [t for t in old if tg.state_of(t.task_id) == HEALTHY]

            # Old tasks that serve no traffic can go right away; healthy ones only
            # while the healthy count stays at or above the minimum.
            surplus = len(healthy_new) + len(healthy_old) - min_healthy
            for t in list(old):
                if tg.state_of(t.task_id) == HEALTHY:
                    if surplus <= 0:
                        continue
                    surplus -= 1
                tg.deregister(t.task_id)
                old.remove(t)
                draining.append(t)
                db.log_event("INFO", f"Draining task {t.task_id} (revision {t.revision})", service_name=service, ref=dep.id)
            tg.expire_draining()
            draining = self._stop_expired(tg, draining)

            if len(healthy_new) >= desired and not promoted:
                promoted = True
                db.set_active_revision(service, rev.revision)
                db.log_event("INFO", f"Revision {rev.name} is now active", service_name=service, ref=dep.id)

            if promoted and not old and not draining:
                db.update_deployment(dep.id, "completed", f"Rollout of {rev.name} completed.")
                db.log_event("INFO", f"Deployment {dep.id} completed", service_name=service, ref=dep.id)
                return

            interval += 1
            self.sleep(self.runtime.health_config.interval_s)

        # New tasks never became healthy: stop them and keep the previous revision.
        for t in new:
            tg.deregister(t.task_id)
            self._stop(t)
        msg = (
            f"New tasks of {rev.name} did not become healthy within "
            f"{self.config.max_health_check_intervals} health-check intervals."
        )
        db.update_deployment(dep.id, "failed", msg)
        db.log_event("ERROR", msg, service_name=service, ref=dep.id)
        for t in draining:
            self._stop(t)
        self.ensure_count(service)

    # --- tasks ---

    def _launch(self, service: str, rev: TaskRevisionRow) -> TaskRow:
        lt = self.launcher.start(service, rev, self.container_name)
        row = db.insert_task(lt.task_id, service, rev.revision, lt.container_id, lt.base_url)
        self.runtime.target_group(service).register(lt.task_id, lt.base_url)
        return row

    def _stop(self, t: TaskRow) -> None:
        self.launcher.stop(t.container_id)
        db.mark_task_stopped(t.task_id)

    def _stop_expired(self, tg: TargetGroup, draining: list[TaskRow]) -> list[TaskRow]:
        """Stop draining tasks whose deregistration delay has elapsed."""
        still: list[TaskRow] = []
        for t in draining:
            if tg.state_of(t.task_id) == UNUSED:
                self._stop(t)
            else:
                still.append(t)
        return still

    def ensure_count(self, service: str) -> list[TaskRow]:
        """Bring the active revision to its desired count. Returns the tasks started."""
        svc = self._service(service)
        if svc.active_revision is None:
            return []
        rev = self._revision(svc, svc.active_revision)
        tg = self.runtime.target_group(service)

        alive: list[TaskRow] = []
        for t in db.list_tasks(service):
            if not self.launcher.is_running(t.container_id):
                tg.deregister(t.task_id)
                db.mark_task_stopped(t.task_id)
                db.log_event("WARN", f"Task {t.task_id} exited", service_name=service, ref=str(t.revision))
                continue
            if t.revision == rev.revision:
                alive.append(t)
                # Tasks that outlived a control-plane restart are re-registered.
                if tg.state_of(t.task_id) == UNUSED:
                    tg.register(t.task_id, t.base_url)

        extra = len(alive) - svc.desired_count
        for t in list(reversed(alive))[: max(0, extra)]:
            tg.deregister(t.task_id)
            self._stop(t)

        started: list[TaskRow] = []
        for _ in range(max(0, svc.desired_count - len(alive))):
            started.append(self._launch(service, rev))
        return started

    def replace_task(self, task: TaskRow) -> TaskRow:
        """Stop task and start a fresh one of the same revision (restart policy)."""
        svc = self._service(task.service_name)
        rev = self._revision(svc, task.revision)
        self.runtime.target_group(task.service_name).deregister(task.task_id)
        self._stop(task)
        fresh = self._launch(task.service_name, rev)
        db.set_restart_count(fresh.task_id, task.restart_count + 1)
        return db.get_task(fresh.task_id) or fresh

    def describe_service(self, service: str) -> dict[str, object]:
        svc = self._service(service)
        return {
            "name": svc.name,
            "cluster": svc.cluster,
            "family": svc.family,
            "desired_count": svc.desired_count,
            "active_revision": svc.active_revision,
            "running_count": len(db.list_tasks(service)),
            "deploying": self.runtime.is_deploying(service),
        }
