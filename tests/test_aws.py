import base64
import json

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber

from fdp.aws import AwsPlatform
from fdp.pipeline import RolloutFailed
from fdp.task_definition import load_task_definition, render_task_definition, to_register_payload

from conftest import REGISTRY, TASK_DEFINITION


IMAGE = f"{REGISTRY}/fargate-demo:abc123"
TD_ARN = "arn:aws:ecs:us-east-1:123456789012:task-definition/fargate-demo:7"


@pytest.fixture
def platform():
    session = boto3.Session(
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
        region_name="us-east-1",
    )
    return AwsPlatform(session=session, max_polls=3, poll_interval_s=0, sleep=lambda s: None)


@pytest.fixture
def ecr(platform):
    with Stubber(platform.ecr) as stub:
        yield stub
        stub.assert_no_pending_responses()


@pytest.fixture
def ecs(platform):
    with Stubber(platform.ecs) as stub:
        yield stub
        stub.assert_no_pending_responses()


def _service(deployments, running=2, desired=2):
    return {
        "services": [
            {
                "serviceName": "web",
                "desiredCount": desired,
                "runningCount": running,
                "deployments": deployments,
            }
        ],
        "failures": [],
    }


def _dep(dep_id, status="PRIMARY", rollout="IN_PROGRESS", reason=None):
    d = {"id": dep_id, "status": status, "rolloutState": rollout, "taskDefinition": TD_ARN}
    if reason:
        d["rolloutStateReason"] = reason
    return d


DESCRIBE = {"cluster": "demo", "services": ["web"]}


def test_image_exists(platform, ecr):
    ecr.add_response(
        "describe_images",
        {"imageDetails": [{"repositoryName": "fargate-demo", "imageTags": ["abc123"]}]},
        {"repositoryName": "fargate-demo", "imageIds": [{"imageTag": "abc123"}]},
    )
    assert platform.image_exists(IMAGE) is True


def test_image_missing(platform, ecr):
    ecr.add_client_error("describe_images", service_error_code="ImageNotFoundException")
    assert platform.image_exists(IMAGE) is False


def test_image_lookup_other_errors_propagate(platform, ecr):
    ecr.add_client_error("describe_images", service_error_code="RepositoryNotFoundException")
    with pytest.raises(ClientError):
        platform.image_exists(IMAGE)


def test_registry_auth_decodes_token(platform, ecr):
    token = base64.b64encode(b"AWS:s3cret").decode()
    ecr.add_response(
        "get_authorization_token",
        {"authorizationData": [{"authorizationToken": token, "proxyEndpoint": f"https://{REGISTRY}"}]},
    )
    assert platform.registry_auth() == {"username": "AWS", "password": "s3cret"}


def test_register_task_definition_sends_rendered_document(platform, ecs):
    td = render_task_definition(load_task_definition(TASK_DEFINITION), "web", IMAGE)
    ecs.add_response(
        "register_task_definition",
        {"taskDefinition": {"taskDefinitionArn": TD_ARN, "family": "fargate-demo", "revision": 7}},
        to_register_payload(td),
    )
    assert platform.register_task_definition(td) == TD_ARN


def test_update_service_returns_primary_deployment(platform, ecs):
    ecs.add_response(
        "update_service",
        {"service": {"serviceName": "web", "deployments": [_dep("ecs-svc/2"), _dep("ecs-svc/1", status="ACTIVE")]}},
        {"cluster": "demo", "service": "web", "taskDefinition": TD_ARN},
    )
    assert platform.update_service("demo", "web", TD_ARN) == "ecs-svc/2"


def test_wait_stable_until_completed(platform, ecs):
    ecs.add_response("describe_services", _service([_dep("ecs-svc/2"), _dep("ecs-svc/1", status="ACTIVE")]), DESCRIBE)
    ecs.add_response("describe_services", _service([_dep("ecs-svc/2", rollout="COMPLETED")], running=1), DESCRIBE)
    ecs.add_response("describe_services", _service([_dep("ecs-svc/2", rollout="COMPLETED")]), DESCRIBE)
    platform.wait_stable("demo", "web", "ecs-svc/2")


def test_wait_stable_failed_rollout(platform, ecs):
    ecs.add_response(
        "describe_services",
        _service([_dep("ecs-svc/2", rollout="FAILED", reason="ECS deployment circuit breaker: tasks failed to start.")]),
        DESCRIBE,
    )
    with pytest.raises(RolloutFailed, match="circuit breaker"):
        platform.wait_stable("demo", "web", "ecs-svc/2")


def test_wait_stable_superseded_deployment(platform, ecs):
    ecs.add_response("describe_services", _service([_dep("ecs-svc/3")]), DESCRIBE)
    with pytest.raises(RolloutFailed, match="gone"):
        platform.wait_stable("demo", "web", "ecs-svc/2")


def test_wait_stable_gives_up(platform, ecs):
    for _ in range(3):
        ecs.add_response("describe_services", _service([_dep("ecs-svc/2")], running=1), DESCRIBE)
    with pytest.raises(RolloutFailed, match="did not stabilise"):
        platform.wait_stable("demo", "web", "ecs-svc/2")


def test_wait_stable_missing_service(platform, ecs):
    ecs.add_response(
        "describe_services",
        {"services": [], "failures": [{"arn": "arn:aws:ecs:us-east-1:123456789012:service/demo/web", "reason": "MISSING"}]},
        DESCRIBE,
    )
    with pytest.raises(RolloutFailed, match="MISSING"):
        platform.wait_stable("demo", "web", "ecs-svc/2")


DESCRIBED_FIELDS = {
    "taskDefinitionArn": TD_ARN,
    "revision": 6,
    "status": "ACTIVE",
    "compatibilities": ["EC2", "FARGATE"],
    "registeredAt": "2024-05-01T10:00:00.000000+00:00",
    "registeredBy": "arn:aws:iam::123456789012:user/ci",
    "requiresAttributes": [{"name": "com.amazonaws.ecs.capability.logging-driver.awslogs"}],
}


@pytest.mark.parametrize("wrapped", [False, True])
def test_register_accepts_exported_task_definition(platform, ecs, tmp_path, wrapped):
    with open(TASK_DEFINITION, encoding="utf-8") as f:
        doc = {**json.load(f), **DESCRIBED_FIELDS}
    if wrapped:
        doc = {"taskDefinition": doc, "tags": []}
    exported = tmp_path / "exported.json"
    exported.write_text(json.dumps(doc), encoding="utf-8")

    td = render_task_definition(load_task_definition(exported), "web", IMAGE)
    expected = to_register_payload(render_task_definition(load_task_definition(TASK_DEFINITION), "web", IMAGE))
    assert not set(DESCRIBED_FIELDS) & set(expected)

    ecs.add_response(
        "register_task_definition",
        {"taskDefinition": {"taskDefinitionArn": TD_ARN, "family": "fargate-demo", "revision": 7}},
        expected,
    )
    assert platform.register_task_definition(td) == TD_ARN
