from __future__ import annotations

import base64
import time
from typing import Any, Callable

import boto3
from botocore.exceptions import ClientError

from . import docker_ops
from .api_models import TaskDefinition
from .pipeline import Platform, RolloutFailed
from .registry import parse_image_uri
from .task_definition import to_register_payload


class AwsPlatform(Platform):
    """ECR + ECS (Fargate) behind an ALB.

    Rollout and health evaluation are done by ECS and the load balancer; this
    class only issues the calls and watches the deployment's rolloutState.
    """

    def __init__(
        self,
        region: str | None = None,
        session: boto3.Session | None = None,
        max_polls: int = 40,
        poll_interval_s: float = 15,
        sleep: Callable[[float], None] = time.sleep,
    ):
        session = session or boto3.Session(region_name=region)
        self.ecr = session.client("ecr")
        self.ecs = session.client("ecs")
        self.max_polls = max(1, int(max_polls))
        self.poll_interval_s = poll_interval_s
        self.sleep = sleep

    def image_exists(self, image_uri: str) -> bool:
        _, repository, tag = parse_image_uri(image_uri)
        if tag is None:
            return False
        try:
            self.ecr.describe_images(repositoryName=repository, imageIds=[{"imageTag": tag}])
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ImageNotFoundException":
                return False
            raise

    def build_image(self, context: str, dockerfile: str, image_uri: str) -> str:
        return docker_ops.build_image(context, image_uri, dockerfile=dockerfile)

    def registry_auth(self) -> dict[str, str]:
        data = self.ecr.get_authorization_token()["authorizationData"][0]
        user, _, password = base64.b64decode(data["authorizationToken"]).decode().partition(":")
        return {"username": user, "password": password}

    def push_image(self, image_uri: str, commit_sha: str) -> str:
        return docker_ops.push_image(image_uri, auth_config=self.registry_auth())

    def register_task_definition(self, td: TaskDefinition) -> str:
        resp = self.ecs.register_task_definition(**to_register_payload(td))
        return resp["taskDefinition"]["taskDefinitionArn"]

    def update_service(self, cluster: str, service: str, task_revision: str) -> str:
        resp = self.ecs.update_service(cluster=cluster, service=service, taskDefinition=task_revision)
        for d in resp["service"].get("deployments", []):
            if d.get("status") == "PRIMARY":
                return d["id"]
        raise RuntimeError(f"Service {service} reported no primary deployment.")

    def wait_stable(self, cluster: str, service: str, deployment_id: str) -> None:
        for _ in range(self.max_polls):
            svc = self._describe(cluster, service)
            deployments: list[dict[str, Any]] = svc.get("deployments", [])
            dep = next((d for d in deployments if d.get("id") == deployment_id), None)
            if dep is None:
                raise RolloutFailed(f"Deployment {deployment_id} is gone (superseded or rolled back).")
            state = dep.get("rolloutState")
            if state == "FAILED":
                raise RolloutFailed(dep.get("rolloutStateReason") or f"Deployment {deployment_id} failed.")
            if dep.get("status") != "PRIMARY":
                raise RolloutFailed(f"Deployment {deployment_id} is no longer primary.")
            if (
                state == "COMPLETED"
                and len(deployments) == 1
                and svc.get("runningCount") == svc.get("desiredCount")
            ):
                return
            self.sleep(self.poll_interval_s)
        raise RolloutFailed(f"Service {service} did not stabilise after {self.max_polls} polls.")

    def _describe(self, cluster: str, service: str) -> dict[str, Any]:
        resp = self.ecs.describe_services(cluster=cluster, services=[service])
        if resp.get("failures"):
            reasons = ", ".join(f.get("reason", "?") for f in resp["failures"])
            raise RolloutFailed(f"describe_services failed: {reasons}")
        if not resp.get("services"):
            raise RolloutFailed(f"Service {service} not found in {cluster}.")
        return resp["services"][0]
