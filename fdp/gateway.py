from __future__ import annotations

from .runtime import RuntimeState
from .targets import Target


class NoHealthyTargets(Exception):
    pass


def select_target(service: str, runtime: RuntimeState) -> Target:
    """Pick a target for a request, round-robin across healthy targets only.

    There is no fail-open: initial, unhealthy and draining targets never
    receive traffic, even if that leaves nothing to route to.
    """
    if service not in runtime.target_groups:
        raise NoHealthyTargets(f"No target group for service '{service}'.")
    healthy = sorted(runtime.target_group(service).healthy_targets(), key=lambda t: t.id)
    if not healthy:
        raise NoHealthyTargets(f"No healthy targets for service '{service}'.")
    return healthy[runtime.next_index(f"svc:{service}", len(healthy))]
