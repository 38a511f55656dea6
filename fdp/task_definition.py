from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .api_models import TaskDefinition


# Read-only fields returned by DescribeTaskDefinition; RegisterTaskDefinition rejects them.
DESCRIBE_ONLY_FIELDS = frozenset(
    {
        "taskDefinitionArn",
        "revision",
        "status",
        "compatibilities",
        "registeredAt",
        "registeredBy",
        "requiresAttributes",
        "deregisteredAt",
    }
)


def load_task_definition(path: str | Path) -> TaskDefinition:
    """Read and validate a task definition JSON template."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"{path}: invalid JSON: {e}") from e
    # Output of `aws ecs describe-task-definition` wraps the document.
    if isinstance(raw, dict) and set(raw) <= {"taskDefinition", "tags"} and "taskDefinition" in raw:
        raw = raw["taskDefinition"]
    return parse_task_definition(raw)


def parse_task_definition(raw: dict[str, Any]) -> TaskDefinition:
    try:
        return TaskDefinition.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Invalid task definition: {e}") from e


def render_task_definition(td: TaskDefinition, container_name: str, image_uri: str) -> TaskDefinition:
    """Return a copy of td with the named container pointed at image_uri."""
    rendered = td.model_copy(deep=True)
    for c in rendered.container_definitions:
        if c.name == container_name:
            c.image = image_uri
            return rendered
    raise KeyError(f"Container '{container_name}' not found in task definition '{td.family}'.")


def to_register_payload(td: TaskDefinition) -> dict[str, Any]:
    payload = td.model_dump(by_alias=True, exclude_none=True)
    return {k: v for k, v in payload.items() if k not in DESCRIBE_ONLY_FIELDS}


def container_port(td: TaskDefinition, container_name: str) -> int:
    """First container port of the named container (the one the load balancer targets)."""
    for c in td.container_definitions:
        if c.name == container_name:
            if not c.port_mappings:
                raise ValueError(f"Container '{container_name}' exposes no ports.")
            return c.port_mappings[0].container_port
    raise KeyError(f"Container '{container_name}' not found in task definition '{td.family}'.")


def images_of(td: TaskDefinition) -> list[str]:
    return [c.image for c in td.container_definitions]
