from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("FDP_DB_PATH", "fdp.db")
    poll_interval_s: int = _env_int("FDP_POLL_INTERVAL_S", 5)
    docker_network: str = os.getenv("FDP_DOCKER_NETWORK", "fdp")
    enable_reconciler: bool = _env_bool("FDP_ENABLE_RECONCILER", False)

    # Backend / proxy
    backend_url: str = os.getenv("FDP_BACKEND_URL", "http://127.0.0.1:3000")
    proxy_connect_timeout_s: float = _env_float("FDP_PROXY_CONNECT_TIMEOUT_S", 1.0)
    proxy_read_timeout_s: float = _env_float("FDP_PROXY_READ_TIMEOUT_S", 10.0)
    # Must stay below the load balancer's probe timeout.
    proxy_health_timeout_s: float = _env_float("FDP_PROXY_HEALTH_TIMEOUT_S", 2.0)
    proxy_required_header: str | None = os.getenv("FDP_PROXY_REQUIRED_HEADER") or None

    # Load balancer health check (ALB defaults)
    health_check_path: str = os.getenv("FDP_HEALTH_CHECK_PATH", "/health")
    health_check_interval_s: int = _env_int("FDP_HEALTH_CHECK_INTERVAL_S", 30)
    health_check_timeout_s: int = _env_int("FDP_HEALTH_CHECK_TIMEOUT_S", 5)
    healthy_threshold: int = _env_int("FDP_HEALTHY_THRESHOLD", 5)
    unhealthy_threshold: int = _env_int("FDP_UNHEALTHY_THRESHOLD", 2)
    health_check_matcher: str = os.getenv("FDP_HEALTH_CHECK_MATCHER", "200")
    deregistration_delay_s: int = _env_int("FDP_DEREGISTRATION_DELAY_S", 30)

    # Rolling update
    minimum_healthy_percent: int = _env_int("FDP_MINIMUM_HEALTHY_PERCENT", 100)
    maximum_percent: int = _env_int("FDP_MAXIMUM_PERCENT", 200)
    max_health_check_intervals: int = _env_int("FDP_MAX_HEALTH_CHECK_INTERVALS", 20)

    # Pipeline inputs (opaque; passed through as-is)
    platform: str = os.getenv("FDP_PLATFORM", "local")
    aws_region: str | None = os.getenv("AWS_REGION")
    registry: str = os.getenv("FDP_REGISTRY", "")
    repository: str = os.getenv("FDP_REPOSITORY", "fargate-demo")
    cluster: str = os.getenv("FDP_CLUSTER", "local")
    service: str = os.getenv("FDP_SERVICE", "web")
    task_definition_path: str = os.getenv("FDP_TASK_DEFINITION", "deploy/task-definition.json")
    container_name: str = os.getenv("FDP_CONTAINER_NAME", "web")
    tracked_branch: str = os.getenv("FDP_TRACKED_BRANCH", "main")
    build_context: str = os.getenv("FDP_BUILD_CONTEXT", ".")
    dockerfile: str = os.getenv("FDP_DOCKERFILE", "Dockerfile")
    desired_count: int = _env_int("FDP_DESIRED_COUNT", 2)
    stable_max_polls: int = _env_int("FDP_STABLE_MAX_POLLS", 40)
    stable_poll_interval_s: int = _env_int("FDP_STABLE_POLL_INTERVAL_S", 15)

    # Control-plane API credentials
    admin_user: str = os.getenv("FDP_ADMIN_USER", "admin")
    admin_password: str = os.getenv("FDP_ADMIN_PASSWORD", "admin")

    # Email alerting (optional)
    enable_email: bool = _env_bool("FDP_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("FDP_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("FDP_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("FDP_SMTP_USER")
    smtp_password: str | None = os.getenv("FDP_SMTP_PASSWORD")
    email_from: str | None = os.getenv("FDP_EMAIL_FROM")
    email_to: str | None = os.getenv("FDP_EMAIL_TO")


settings = Settings()
