from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# Fargate task size table: cpu units -> allowed memory (MiB).
FARGATE_SIZES: dict[int, set[int]] = {
    256: {512, 1024, 2048},
    512: set(range(1024, 4097, 1024)),
    1024: set(range(2048, 8193, 1024)),
    2048: set(range(4096, 16385, 1024)),
    4096: set(range(8192, 30721, 1024)),
}


class EcsModel(BaseModel):
    """Base for ECS JSON documents: camelCase on the wire, unknown keys kept."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class PortMapping(EcsModel):
    container_port: int = Field(..., alias="containerPort", ge=1, le=65535)
    host_port: Optional[int] = Field(None, alias="hostPort", ge=1, le=65535)
    protocol: str = "tcp"


class KeyValuePair(EcsModel):
    name: str
    value: str


class LogConfiguration(EcsModel):
    log_driver: str = Field(..., alias="logDriver")
    options: Optional[dict[str, str]] = None


class ContainerDefinition(EcsModel):
    name: str = Field(..., min_length=1)
    image: str = Field(..., min_length=1)
    essential: bool = True
    port_mappings: list[PortMapping] = Field(default_factory=list, alias="portMappings")
    cpu: Optional[int] = Field(None, ge=0)
    memory: Optional[int] = Field(None, ge=4)
    memory_reservation: Optional[int] = Field(None, alias="memoryReservation", ge=4)
    environment: list[KeyValuePair] = Field(default_factory=list)
    log_configuration: Optional[LogConfiguration] = Field(None, alias="logConfiguration")


class TaskDefinition(EcsModel):
    family: str = Field(..., min_length=1, max_length=255)
    network_mode: str = Field("awsvpc", alias="networkMode")
    requires_compatibilities: list[str] = Field(default_factory=lambda: ["FARGATE"], alias="requiresCompatibilities")
    cpu: Optional[str] = None
    memory: Optional[str] = None
    execution_role_arn: Optional[str] = Field(None, alias="executionRoleArn")
    task_role_arn: Optional[str] = Field(None, alias="taskRoleArn")
    container_definitions: list[ContainerDefinition] = Field(..., alias="containerDefinitions", min_length=1)

    @model_validator(mode="after")
    def _check(self) -> "TaskDefinition":
        names = [c.name for c in self.container_definitions]
        if len(names) != len(set(names)):
            raise ValueError("Container names must be unique within a task definition.")
        if not any(c.essential for c in self.container_definitions):
            raise ValueError("At least one container must be essential.")

        if self.network_mode == "awsvpc":
            for c in self.container_definitions:
                for pm in c.port_mappings:
                    if pm.host_port is not None and pm.host_port != pm.container_port:
                        raise ValueError("With awsvpc networking hostPort must equal containerPort.")

        if "FARGATE" in self.requires_compatibilities:
            if self.network_mode != "awsvpc":
                raise ValueError("Fargate tasks require networkMode 'awsvpc'.")
            if self.cpu is None or self.memory is None:
                raise ValueError("Fargate tasks require task-level cpu and memory.")
            try:
                cpu, memory = int(self.cpu), int(self.memory)
            except ValueError:
                raise ValueError("cpu and memory must be given as integer strings (units / MiB).") from None
            if memory not in FARGATE_SIZES.get(cpu, set()):
                raise ValueError(f"Unsupported Fargate cpu/memory combination: {cpu}/{memory}.")
        return self


class PushEvent(BaseModel):
    """Subset of a GitHub push webhook payload."""

    ref: str = Field(..., description="e.g. refs/heads/main")
    after: str = Field(..., description="Head commit SHA after the push")

    @property
    def branch(self) -> str:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else self.ref


class RollbackRequest(BaseModel):
    revision: int = Field(..., ge=1, description="Task revision number to restore")
