from __future__ import annotations

import time
from threading import Thread

from . import alerts, db
from .orchestrator import Orchestrator
from .settings import settings
from .targets import HEALTHY, UNHEALTHY


class Reconciler:
    """Continuously reconciles desired state with actual state.

    Keeps each service's active revision at its desired count, runs the
    load balancer's health checks and replaces tasks whose targets turned
    unhealthy. Services with a rollout in progress are left to the rollout.
    """

    def __init__(self, orchestrator: Orchestrator):
        self.orchestrator = orchestrator
        self.runtime = orchestrator.runtime
        self._stop = False
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop:
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            time.sleep(max(1, settings.poll_interval_s))

    def tick(self) -> None:
        for svc in db.list_services():
            if svc.active_revision is None:
                continue
            lock = self.runtime.service_lock(svc.name)
            # A rollout holds the lock for its whole duration.
            if not lock.acquire(blocking=False):
                continue
            try:
                if self.runtime.is_deploying(svc.name):
                    continue
                self.orchestrator.ensure_count(svc.name)
                self._health_and_self_heal(svc.name)
            finally:
                lock.release()

    def _health_and_self_heal(self, service: str) -> None:
        tg = self.runtime.target_group(service)
        before = {t.id: t.state for t in tg.targets()}
        after = tg.probe_all()

        for task in db.list_tasks(service):
            prev, state = before.get(task.task_id), after.get(task.task_id)
            if prev == HEALTHY and state == UNHEALTHY:
                t = tg.get(task.task_id)
                reason = t.reason if t else ""
                db.log_event("WARN", f"Target {task.task_id} became unhealthy: {reason}", service_name=service, ref=str(task.revision))
                alerts.target_changed(service, task.task_id, healthy=False, detail=reason)
            elif prev == UNHEALTHY and state == HEALTHY:
                db.log_event("INFO", f"Target {task.task_id} recovered", service_name=service, ref=str(task.revision))
                alerts.target_changed(service, task.task_id, healthy=True, detail="Recovered")

            if state == UNHEALTHY:
                fresh = self.orchestrator.replace_task(task)
                db.log_event(
                    "ERROR",
                    f"Replaced unhealthy task {task.task_id} with {fresh.task_id} (restart #{fresh.restart_count})",
                    service_name=service,
                    ref=str(task.revision),
                )

