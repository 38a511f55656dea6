from __future__ import annotations

import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable

from . import alerts, db, docker_ops
from .api_models import PushEvent, TaskDefinition
from .db import PipelineRunRow
from .orchestrator import Orchestrator
from .registry import LocalRegistry, derive_image_tag, image_uri, parse_image_uri
from .settings import settings
from .task_definition import load_task_definition, render_task_definition


TRIGGERED = "triggered"
IMAGE_BUILT = "image-built"
IMAGE_PUSHED = "image-pushed"
TASK_REGISTERED = "task-registered"
SERVICE_UPDATED = "service-updated"
ROLLOUT_STABLE = "rollout-stable"
FAILED = "failed"

STATES = [TRIGGERED, IMAGE_BUILT, IMAGE_PUSHED, TASK_REGISTERED, SERVICE_UPDATED, ROLLOUT_STABLE]


class StepFailed(Exception):
    """A pipeline step failed; the run halts and nothing further is promoted."""

    def __init__(self, message: str, step: str | None = None):
        super().__init__(message)
        self.step = step


class BuildFailed(StepFailed):
    pass


class PublishFailed(StepFailed):
    pass


class RegisterFailed(StepFailed):
    pass


class RolloutFailed(StepFailed):
    pass


STEP_ERRORS: dict[str, type[StepFailed]] = {
    IMAGE_BUILT: BuildFailed,
    IMAGE_PUSHED: PublishFailed,
    TASK_REGISTERED: RegisterFailed,
    SERVICE_UPDATED: RolloutFailed,
    ROLLOUT_STABLE: RolloutFailed,
}


@dataclass(frozen=True)
class PipelineConfig:
    """Pipeline inputs. Values are opaque strings handed to the platform as-is."""

    registry: str
    repository: str
    cluster: str
    service: str
    task_definition_path: str
    container_name: str
    tracked_branch: str = "main"
    build_context: str = "."
    dockerfile: str = "Dockerfile"

    @classmethod
    def from_settings(cls) -> "PipelineConfig":
        return cls(
            registry=settings.registry,
            repository=settings.repository,
            cluster=settings.cluster,
            service=settings.service,
            task_definition_path=settings.task_definition_path,
            container_name=settings.container_name,
            tracked_branch=settings.tracked_branch,
            build_context=settings.build_context,
            dockerfile=settings.dockerfile,
        )


class Platform(ABC):
    """The external services a pipeline run drives: builder, registry, orchestration."""

    @abstractmethod
    def image_exists(self, image_uri: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def build_image(self, context: str, dockerfile: str, image_uri: str) -> str:
        """Build and tag image_uri; return the image digest."""
        raise NotImplementedError

    @abstractmethod
    def push_image(self, image_uri: str, commit_sha: str) -> str:
        """Publish image_uri; return the registry digest."""
        raise NotImplementedError

    @abstractmethod
    def register_task_definition(self, td: TaskDefinition) -> str:
        """Register a new revision; return its identifier (family:N or ARN)."""
        raise NotImplementedError

    @abstractmethod
    def update_service(self, cluster: str, service: str, task_revision: str) -> str:
        """Point service at task_revision; return the deployment id."""
        raise NotImplementedError

    @abstractmethod
    def wait_stable(self, cluster: str, service: str, deployment_id: str) -> None:
        """Block until the deployment is stable; raise RolloutFailed otherwise."""
        raise NotImplementedError


Builder = Callable[[str, str, str], str]


def docker_builder(context: str, dockerfile: str, image_ref: str) -> str:
    return docker_ops.build_image(context, image_ref, dockerfile=dockerfile)


class LocalPlatform(Platform):
    """Single-node platform: docker builds, the SQLite registry and the local orchestrator."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        registry: LocalRegistry,
        builder: Builder = docker_builder,
        desired_count: int = 2,
    ):
        self.orchestrator = orchestrator
        self.registry = registry
        self.builder = builder
        self.desired_count = desired_count
        self._built: dict[str, str] = {}

    def image_exists(self, image_uri: str) -> bool:
        return self.registry.has_uri(image_uri)

    def build_image(self, context: str, dockerfile: str, image_uri: str) -> str:
        digest = self.builder(context, dockerfile, image_uri)
        self._built[image_uri] = digest
        return digest

    def push_image(self, image_uri: str, commit_sha: str) -> str:
        digest = self._built.get(image_uri) or docker_ops.image_id(image_uri)
        if not digest:
            raise RuntimeError(f"Image {image_uri} has not been built.")
        _, repository, tag = parse_image_uri(image_uri)
        if tag is None:
            raise ValueError(f"Image reference {image_uri} has no tag.")
        return self.registry.publish(repository, tag, digest, commit_sha).digest

    def register_task_definition(self, td: TaskDefinition) -> str:
        return self.orchestrator.register_task_definition(td).name

    def update_service(self, cluster: str, service: str, task_revision: str) -> str:
        family, _, revision = task_revision.rpartition(":")
        self.orchestrator.create_service(service, family, self.desired_count, cluster=cluster)
        return self.orchestrator.update_service(service, int(revision)).id

    def wait_stable(self, cluster: str, service: str, deployment_id: str) -> None:
        dep = self.orchestrator.run_deployment(deployment_id)
        if dep.state != "completed":
            raise RolloutFailed(dep.message)


class Pipeline:
    """Push-triggered deployment: build, push, register, update, wait for stable.

    Each state is entered only when the previous step succeeded. Any failure
    halts the run with the failing step recorded; the previously active task
    revision is left untouched. Runs for the same service are serialised.
    """

    def __init__(self, platform: Platform, config: PipelineConfig):
        self.platform = platform
        self.config = config
        self._lock = Lock()
        self._service_locks: dict[str, Lock] = {}

    def _service_lock(self, service: str) -> Lock:
        with self._lock:
            lk = self._service_locks.get(service)
            if lk is None:
                lk = Lock()
                self._service_locks[service] = lk
            return lk

    def trigger(self, event: PushEvent) -> PipelineRunRow | None:
        """Record a run for a push to the tracked branch; other branches are ignored."""
        if event.branch != self.config.tracked_branch:
            db.log_event("INFO", f"Ignoring push to '{event.branch}'", service_name=self.config.service)
            return None
        run = db.insert_run(secrets.token_hex(6), event.after, event.branch, self.config.service)
        db.log_event("INFO", f"Run triggered by {event.after} on {event.branch}", service_name=run.service_name, ref=run.id)
        return run

    def run(self, event: PushEvent) -> PipelineRunRow | None:
        run = self.trigger(event)
        if run is None:
            return None
        return self.execute(run.id)

    def execute(self, run_id: str) -> PipelineRunRow:
        run = db.get_run(run_id)
        if not run:
            raise KeyError("unknown run")
        if run.state != TRIGGERED:
            return run
        with self._service_lock(run.service_name):
            try:
                self._execute(run)
            except StepFailed as e:
                self._fail(run, e)
        out = db.get_run(run_id)
        if out is None:
            raise KeyError("unknown run")
        return out

    def _execute(self, run: PipelineRunRow) -> None:
        cfg = self.config
        tag = self._step(IMAGE_BUILT, derive_image_tag, run.commit_sha)
        uri = self._step(IMAGE_BUILT, image_uri, cfg.registry, cfg.repository, tag)
        db.update_run(run.id, image_tag=tag, image_uri=uri)

        if self._step(IMAGE_BUILT, self.platform.image_exists, uri):
            # Same commit again: the published image is reused as-is.
            self._advance(run, IMAGE_BUILT, f"Image {uri} already published; reusing it.")
            self._advance(run, IMAGE_PUSHED, f"Image {uri} already in the registry.")
        else:
            digest = self._step(IMAGE_BUILT, self.platform.build_image, cfg.build_context, cfg.dockerfile, uri)
            self._advance(run, IMAGE_BUILT, f"Built {uri} ({digest}).")
            digest = self._step(IMAGE_PUSHED, self.platform.push_image, uri, run.commit_sha)
            self._advance(run, IMAGE_PUSHED, f"Pushed {uri} ({digest}).")

        td = self._step(TASK_REGISTERED, self._render, uri)
        revision = self._step(TASK_REGISTERED, self.platform.register_task_definition, td)
        self._advance(run, TASK_REGISTERED, f"Registered task revision {revision}.", task_revision=revision)

        deployment_id = self._step(SERVICE_UPDATED, self.platform.update_service, cfg.cluster, cfg.service, revision)
        self._advance(run, SERVICE_UPDATED, f"Service {cfg.service} updated to {revision}.", deployment_id=deployment_id)

        self._step(ROLLOUT_STABLE, self.platform.wait_stable, cfg.cluster, cfg.service, deployment_id)
        self._advance(run, ROLLOUT_STABLE, f"Rollout of {revision} is stable.")

    def _render(self, uri: str) -> TaskDefinition:
        td = load_task_definition(self.config.task_definition_path)
        return render_task_definition(td, self.config.container_name, uri)

    def _step(self, step: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            return fn(*args)
        except StepFailed as e:
            if e.step is None:
                e.step = step
            raise
        except Exception as e:
            raise STEP_ERRORS[step](f"{type(e).__name__}: {e}", step=step) from e

    def _advance(self, run: PipelineRunRow, state: str, message: str, **fields: Any) -> None:
        db.update_run(run.id, state=state, message=message, **fields)
        db.log_event("INFO", message, service_name=run.service_name, ref=run.id)

    def _fail(self, run: PipelineRunRow, e: StepFailed) -> None:
        message = f"{type(e).__name__} at {e.step}: {e}"
        db.update_run(run.id, state=FAILED, failed_step=e.step, message=message)
        db.log_event("ERROR", message, service_name=run.service_name, ref=run.id)
        alerts.run_failed(run.id, run.commit_sha, run.branch, message)
