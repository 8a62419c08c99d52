from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TypeVar

from .docker_ops import ContainerRef, NetworkRef, VolumeRef
from .labels import KIND_CONTAINER, KIND_NETWORK, KIND_VOLUME, label_filters, logical_name

logger = logging.getLogger(__name__)

T = TypeVar("T", ContainerRef, NetworkRef, VolumeRef)


@dataclass
class Inventory:
    """A project's labeled resources, grouped by logical name."""

    project: str
    containers: dict[str, list[ContainerRef]] = field(default_factory=dict)
    networks: dict[str, list[NetworkRef]] = field(default_factory=dict)
    volumes: dict[str, list[VolumeRef]] = field(default_factory=dict)

    def duplicates(self) -> dict[str, list[ContainerRef]]:
        return {name: refs for name, refs in self.containers.items() if len(refs) > 1}

    def is_empty(self) -> bool:
        return not (self.containers or self.networks or self.volumes)


def _group(kind: str, refs: list[T]) -> dict[str, list[T]]:
    grouped: dict[str, list[T]] = {}
    for r in refs:
        grouped.setdefault(logical_name(kind, r.labels), []).append(r)
    return grouped


def collect(runtime, project: str) -> Inventory:
    """Query the runtime for every resource labeled with `project`.

    Any runtime failure propagates; there is no partial inventory.
    """
    containers = runtime.list_containers(label_filters(project, KIND_CONTAINER))
    networks = runtime.list_networks(label_filters(project, KIND_NETWORK))
    volumes = runtime.list_volumes(label_filters(project, KIND_VOLUME))

    inv = Inventory(
        project=project,
        containers=_group(KIND_CONTAINER, containers),
        networks=_group(KIND_NETWORK, networks),
        volumes=_group(KIND_VOLUME, volumes),
    )
    for name, refs in inv.duplicates().items():
        logger.warning("Service %s has %d containers in project %s", name, len(refs), project)
    logger.debug(
        "Inventory for %s: %d container group(s), %d network(s), %d volume(s)",
        project,
        len(inv.containers),
        len(inv.networks),
        len(inv.volumes),
    )
    return inv
