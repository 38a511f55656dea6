from __future__ import annotations

import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable

from .health import ProbeResult, check_health, parse_matcher
from .settings import settings


UNUSED = "unused"
INITIAL = "initial"
HEALTHY = "healthy"
UNHEALTHY = "unhealthy"
DRAINING = "draining"


@dataclass(frozen=True)
class HealthCheckConfig:
    path: str = "/health"
    interval_s: int = 30
    timeout_s: int = 5
    healthy_threshold: int = 5
    unhealthy_threshold: int = 2
    matcher: str = "200"
    deregistration_delay_s: int = 300

    def __post_init__(self) -> None:
        if not self.path.startswith("/") or "://" in self.path:
            raise ValueError("Health check path must be an absolute path.")
        if self.timeout_s <= 0 or self.interval_s <= 0:
            raise ValueError("Health check interval and timeout must be positive.")
        if self.timeout_s >= self.interval_s:
            raise ValueError("Health check timeout must be smaller than the interval.")
        if not 2 <= self.healthy_threshold <= 10 or not 2 <= self.unhealthy_threshold <= 10:
            raise ValueError("Health check thresholds must be between 2 and 10.")
        if self.deregistration_delay_s < 0:
            raise ValueError("Deregistration delay cannot be negative.")
        parse_matcher(self.matcher)

    @property
    def success_codes(self) -> frozenset[int]:
        return parse_matcher(self.matcher)

    @classmethod
    def from_settings(cls) -> "HealthCheckConfig":
        return cls(
            path=settings.health_check_path,
            interval_s=settings.health_check_interval_s,
            timeout_s=settings.health_check_timeout_s,
            healthy_threshold=settings.healthy_threshold,
            unhealthy_threshold=settings.unhealthy_threshold,
            matcher=settings.health_check_matcher,
            deregistration_delay_s=settings.deregistration_delay_s,
        )


@dataclass
class Target:
    id: str
    base_url: str
    state: str = UNUSED
    reason: str = ""
    consecutive_ok: int = 0
    consecutive_fail: int = 0
    last_latency_ms: float | None = None
    draining_since: float | None = None
    transitions: list[str] = field(default_factory=list)

    def _move(self, state: str, reason: str) -> None:
        if state != self.state:
            self.transitions.append(f"{self.state}->{state}")
        self.state = state
        self.reason = reason


Prober = Callable[[str, HealthCheckConfig], ProbeResult]


def http_prober(url: str, config: HealthCheckConfig) -> ProbeResult:
    return check_health(url, timeout_s=config.timeout_s, success_codes=config.success_codes)


class TargetGroup:
    """Health-based target tracking for one service, modelled on an ALB target group.

    Per target: unused -> initial -> healthy <-> unhealthy -> draining -> unused.
    Traffic only goes to healthy targets.
    """

    def __init__(
        self,
        name: str,
        config: HealthCheckConfig,
        prober: Prober = http_prober,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config
        self.prober = prober
        self.clock = clock
        self._lock = Lock()
        self._targets: dict[str, Target] = {}

    def register(self, target_id: str, base_url: str) -> Target:
        with self._lock:
            t = self._targets.get(target_id)
            if t and t.state != DRAINING:
                return t
            t = Target(id=target_id, base_url=base_url.rstrip("/"))
            t._move(INITIAL, "Elb.RegistrationInProgress")
            self._targets[target_id] = t
            return t

    def deregister(self, target_id: str) -> None:
        with self._lock:
            t = self._targets.get(target_id)
            if not t or t.state == DRAINING:
                return
            t._move(DRAINING, "Target.DeregistrationInProgress")
            t.draining_since = self.clock()

    def state_of(self, target_id: str) -> str:
        with self._lock:
            t = self._targets.get(target_id)
            return t.state if t else UNUSED

    def get(self, target_id: str) -> Target | None:
        with self._lock:
            return self._targets.get(target_id)

    def targets(self) -> list[Target]:
        with self._lock:
            return list(self._targets.values())

    def healthy_targets(self) -> list[Target]:
        with self._lock:
            return [t for t in self._targets.values() if t.state == HEALTHY]

    def record(self, target_id: str, result: ProbeResult) -> str:
        """Feed one probe result into a target's state machine and return its state."""
        with self._lock:
            t = self._targets.get(target_id)
            if not t:
                return UNUSED
            if t.state == DRAINING:
                return t.state
            t.last_latency_ms = result.latency_ms
            if result.ok:
                t.consecutive_fail = 0
                t.consecutive_ok += 1
                if t.state != HEALTHY and t.consecutive_ok >= self.config.healthy_threshold:
                    t._move(HEALTHY, "")
            else:
                t.consecutive_ok = 0
                t.consecutive_fail += 1
                if t.state != UNHEALTHY and t.consecutive_fail >= self.config.unhealthy_threshold:
                    t._move(UNHEALTHY, f"Target.ResponseCodeMismatch: {result.message}")
            return t.state

    def probe_all(self) -> dict[str, str]:
        """Run one health-check interval over every registered target.

        Returns target_id -> state after the interval. Draining targets whose
        deregistration delay has elapsed are dropped.
        """
        self.expire_draining()
        states: dict[str, str] = {}
        for t in self.targets():
            if t.state == DRAINING:
                states[t.id] = t.state
                continue
            result = self.prober(f"{t.base_url}{self.config.path}", self.config)
            states[t.id] = self.record(t.id, result)
        return states

    def expire_draining(self) -> list[str]:
        now = self.clock()
        expired: list[str] = []
        with self._lock:
            for tid, t in list(self._targets.items()):
                if t.state != DRAINING or t.draining_since is None:
                    continue
                if now - t.draining_since >= self.config.deregistration_delay_s:
                    expired.append(tid)
                    del self._targets[tid]
        return expired

    def describe(self) -> list[dict[str, object]]:
        return [
            {
                "target_id": t.id,
                "base_url": t.base_url,
                "state": t.state,
                "reason": t.reason,
                "last_latency_ms": t.last_latency_ms,
            }
            for t in self.targets()
        ]
