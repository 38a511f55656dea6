from __future__ import annotations

import re
import secrets
from dataclasses import dataclass

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .settings import settings


SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network() -> None:
    if not docker_available():
        return
    c = _client()
    try:
        c.networks.get(settings.docker_network)
    except NotFound:
        c.networks.create(settings.docker_network, driver="bridge")
        log_event("INFO", f"Created docker network '{settings.docker_network}'.")


def build_image(context_path: str, image_ref: str, dockerfile: str = "Dockerfile") -> str:
    """Build an image and tag it as image_ref. Returns the image id (content digest)."""
    c = _client()
    image, _logs = c.images.build(path=context_path, dockerfile=dockerfile, tag=image_ref, rm=True)
    return image.id


def image_id(image_ref: str) -> str | None:
    try:
        return _client().images.get(image_ref).id
    except NotFound:
        return None


def push_image(image_ref: str, auth_config: dict[str, str] | None = None) -> str:
    """Push image_ref and return the registry digest reported by the daemon."""
    repository, _, tag = image_ref.rpartition(":")
    c = _client()
    digest = ""
    for chunk in c.images.push(repository, tag=tag, stream=True, decode=True, auth_config=auth_config):
        if "error" in chunk:
            raise RuntimeError(f"Push of {image_ref} failed: {chunk['error']}")
        aux = chunk.get("aux") or {}
        if aux.get("Digest"):
            digest = aux["Digest"]
    if not digest:
        raise RuntimeError(f"Push of {image_ref} reported no digest.")
    return digest


def create_task_container(
    service: str,
    revision: int,
    image: str,
    env: dict[str, str] | None = None,
) -> ContainerRef:
    """Create and start a task container attached to the FDP network.

    Containers are labeled so they can be re-discovered after restarts.
    """
    validate_service_name(service)
    ensure_network()

    if not docker_available():
        raise RuntimeError("Docker is not available. Start the docker daemon and try again.")

    rand = secrets.token_hex(3)
    name = f"fdp-{service}-{revision}-{rand}"
    labels: dict[str, str] = {
        "fdp.service": service,
        "fdp.revision": str(revision),
    }

    c = _client()
    container = c.containers.run(
        image,
        detach=True,
        name=name,
        environment=env or {},
        network=settings.docker_network,
        labels=labels,
        # Replacement of unhealthy tasks is the reconciler's job.
        restart_policy={"Name": "no"},
    )

    log_event("INFO", f"Started container {name} from image {image}", service_name=service, ref=str(revision))
    return ContainerRef(id=container.id, name=name)


def remove_container(container_id: str, force: bool = True) -> None:
    if not docker_available():
        return
    c = _client()
    try:
        cont = c.containers.get(container_id)
        cont.remove(force=force)
    except NotFound:
        return


def container_is_running(container_id: str) -> bool:
    if not docker_available():
        return False
    c = _client()
    try:
        cont = c.containers.get(container_id)
        cont.reload()
        return cont.status == "running"
    except NotFound:
        return False


def container_http_base(container_name: str, port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(port)}"
