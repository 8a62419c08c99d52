from __future__ import annotations

import logging
from typing import Iterable

from .docker_ops import ContainerRef
from .inventory import collect
from .labels import short_id
from .progress import Progress
from .settings import settings

logger = logging.getLogger(__name__)


def stop_and_remove(runtime, service: str, containers: list[ContainerRef], timeout: int, progress: Progress) -> None:
    for c in containers:
        runtime.stop_container(c, timeout)
        runtime.remove_container(c)
        progress.action(f"Stopping containers for service {service}", short_id(c.id))


def teardown(
    runtime,
    project: str,
    external_networks: Iterable[str] = (),
    external_volumes: Iterable[str] = (),
    progress: Progress | None = None,
    stop_timeout: int | None = None,
) -> int:
    """Remove every resource labeled for `project`; returns how many were removed.

    Containers go first since networks and volumes cannot be removed while
    a container still uses them. The first failure propagates and stops the
    teardown; whatever was already removed stays removed.
    """
    progress = progress or Progress()
    timeout = settings.stop_timeout_s if stop_timeout is None else stop_timeout
    skip_networks = set(external_networks)
    skip_volumes = set(external_volumes)

    inventory = collect(runtime, project)
    if inventory.is_empty():
        logger.info("Nothing to remove for project %s", project)
        return 0

    removed = 0
    for service in sorted(inventory.containers):
        refs = inventory.containers[service]
        stop_and_remove(runtime, service, refs, timeout, progress)
        removed += len(refs)

    for name in sorted(inventory.volumes):
        if name in skip_volumes:
            logger.info("Skipping external volume %s", name)
            continue
        for v in inventory.volumes[name]:
            runtime.remove_volume(v)
            progress.action(f"Deleting volume {name}", v.name)
            removed += 1

    for name in sorted(inventory.networks):
        if name in skip_networks:
            logger.info("Skipping external network %s", name)
            continue
        for n in inventory.networks[name]:
            runtime.remove_network(n)
            progress.action(f"Deleting network {name}", n.name)
            removed += 1

    return removed
