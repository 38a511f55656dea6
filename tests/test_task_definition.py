import copy
import json
import os

import pytest

from fdp.task_definition import (
    container_port,
    load_task_definition,
    parse_task_definition,
    render_task_definition,
    to_register_payload,
)


TASK_DEFINITION = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "deploy", "task-definition.json")


def _raw():
    with open(TASK_DEFINITION, encoding="utf-8") as f:
        return json.load(f)


def test_template_loads_and_targets_proxy_port():
    td = load_task_definition(TASK_DEFINITION)
    assert td.family == "fargate-demo"
    assert container_port(td, "web") == 80
    assert td.container_definitions[0].log_configuration.log_driver == "awslogs"


def test_render_replaces_only_the_named_container_image():
    td = load_task_definition(TASK_DEFINITION)
    rendered = render_task_definition(td, "web", "reg/app:abc123")
    assert rendered.container_definitions[0].image == "reg/app:abc123"
    assert td.container_definitions[0].image == "<IMAGE_URI>"

    with pytest.raises(KeyError):
        render_task_definition(td, "sidecar", "reg/app:abc123")


def test_register_payload_uses_ecs_field_names():
    td = render_task_definition(load_task_definition(TASK_DEFINITION), "web", "reg/app:abc123")
    payload = to_register_payload(td)
    c = payload["containerDefinitions"][0]
    assert payload["requiresCompatibilities"] == ["FARGATE"]
    assert c["portMappings"] == [{"containerPort": 80, "hostPort": 80, "protocol": "tcp"}]
    assert c["logConfiguration"]["logDriver"] == "awslogs"
    assert "memoryReservation" not in c


def test_unknown_keys_are_kept():
    raw = _raw()
    raw["containerDefinitions"][0]["stopTimeout"] = 30
    payload = to_register_payload(parse_task_definition(raw))
    assert payload["containerDefinitions"][0]["stopTimeout"] == 30


@pytest.mark.parametrize(
    "mutate",
    [
        lambda d: d.update(cpu="256", memory="4096"),
        lambda d: d.update(networkMode="bridge"),
        lambda d: d.pop("memory"),
        lambda d: d["containerDefinitions"][0]["portMappings"][0].update(hostPort=8080),
        lambda d: d["containerDefinitions"].append(copy.deepcopy(d["containerDefinitions"][0])),
        lambda d: d.update(containerDefinitions=[]),
    ],
)
def test_invalid_task_definitions_are_rejected(mutate):
    raw = _raw()
    mutate(raw)
    with pytest.raises(ValueError):
        parse_task_definition(raw)


def test_invalid_json(tmp_path):
    p = tmp_path / "td.json"
    p.write_text("{not json", encoding="utf-8")
    with pytest.raises(ValueError):
        load_task_definition(p)
