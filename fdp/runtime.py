from __future__ import annotations

from threading import Lock

from .targets import HealthCheckConfig, Prober, TargetGroup, http_prober


class RuntimeState:
    """In-memory state shared by the orchestrator, reconciler and gateway."""

    def __init__(self, health_config: HealthCheckConfig, prober: Prober = http_prober) -> None:
        self.lock = Lock()
        self.health_config = health_config
        self.prober = prober
        self.target_groups: dict[str, TargetGroup] = {}  # service -> group
        self.rr_index: dict[str, int] = {}  # key -> idx
        self.deploying: set[str] = set()  # services with a rollout in progress
        self.service_locks: dict[str, Lock] = {}  # held by a rollout or a reconcile pass

    def target_group(self, service: str) -> TargetGroup:
        with self.lock:
            tg = self.target_groups.get(service)
            if tg is None:
                tg = TargetGroup(f"{service}-tg", self.health_config, prober=self.prober)
                self.target_groups[service] = tg
            return tg

    def service_lock(self, service: str) -> Lock:
        with self.lock:
            lk = self.service_locks.get(service)
            if lk is None:
                lk = Lock()
                self.service_locks[service] = lk
            return lk

    def begin_deploy(self, service: str) -> bool:
        with self.lock:
            if service in self.deploying:
                return False
            self.deploying.add(service)
            return True

    def end_deploy(self, service: str) -> None:
        with self.lock:
            self.deploying.discard(service)

    def is_deploying(self, service: str) -> bool:
        with self.lock:
            return service in self.deploying

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i
