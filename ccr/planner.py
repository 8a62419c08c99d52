"""Diff a project's declared resources against the runtime inventory.

The planner only reads from the runtime (inspections to resolve networks
and volumes by name). It returns a complete list of typed actions; nothing
is created or removed until the plan is handed to the provisioner.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from .docker_ops import ContainerRef, NetworkRef, VolumeRef
from .errors import ExternalResourceNotFound
from .inventory import Inventory
from .labels import (
    KIND_CONTAINER,
    KIND_NETWORK,
    KIND_VOLUME,
    LABEL_CONFIG_HASH,
    container_identity,
    default_network_name,
    fingerprint,
    volume_identity,
)
from .models import NetworkConfig, Project, Service, VolumeConfig

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "default"


class Op(str, Enum):
    CREATE = "create"
    KEEP = "keep"
    REPLACE = "replace"
    REMOVE = "remove"
    VERIFY = "verify"


MUTATING = {Op.CREATE, Op.REPLACE, Op.REMOVE}

Desired = Union[Service, NetworkConfig, VolumeConfig, None]
Observed = Union[ContainerRef, NetworkRef, VolumeRef]


@dataclass(frozen=True)
class Action:
    kind: str
    op: Op
    key: str  # logical name
    name: str  # runtime name
    desired: Desired = None
    fingerprint: str | None = None
    existing: tuple[Observed, ...] = ()

    @property
    def mutating(self) -> bool:
        return self.op in MUTATING

    def describe(self) -> str:
        what = "service" if self.kind == KIND_CONTAINER else self.kind
        text = f"{self.op.value:<8}{what} {self.key}"
        if self.name != self.key:
            text += f" ({self.name})"
        if self.existing and self.op in (Op.REPLACE, Op.REMOVE):
            text += f" [{len(self.existing)} existing]"
        return text


@dataclass
class Plan:
    project: str
    networks: list[Action] = field(default_factory=list)
    volumes: list[Action] = field(default_factory=list)
    services: list[Action] = field(default_factory=list)
    orphans: list[Action] = field(default_factory=list)

    def actions(self) -> list[Action]:
        """All actions in the order they are applied."""
        return [*self.networks, *self.volumes, *self.orphans, *self.services]

    def changes(self) -> list[Action]:
        return [a for a in self.actions() if a.mutating]

    @property
    def converged(self) -> bool:
        return not self.changes()

    def network_names(self) -> dict[str, str]:
        return {a.key: a.name for a in self.networks}

    def volume_names(self) -> dict[str, str]:
        return {a.key: a.name for a in self.volumes}


def _network_action(runtime, key: str, cfg: NetworkConfig) -> Action:
    name = cfg.name or key
    found = runtime.inspect_network(name)
    if cfg.external:
        if found is None:
            raise ExternalResourceNotFound("network", name)
        return Action(KIND_NETWORK, Op.VERIFY, key, name, cfg, existing=(found,))
    if found is None:
        return Action(KIND_NETWORK, Op.CREATE, key, name, cfg)
    return Action(KIND_NETWORK, Op.KEEP, key, name, cfg, existing=(found,))


def _volume_action(runtime, project: str, key: str, cfg: VolumeConfig) -> Action:
    if cfg.external:
        name = cfg.name or key
        found = runtime.inspect_volume(name)
        if found is None:
            raise ExternalResourceNotFound("volume", name)
        return Action(KIND_VOLUME, Op.VERIFY, key, name, cfg, existing=(found,))
    name = volume_identity(project, cfg.name or key)
    found = runtime.inspect_volume(name)
    if found is None:
        return Action(KIND_VOLUME, Op.CREATE, key, name, cfg)
    return Action(KIND_VOLUME, Op.KEEP, key, name, cfg, existing=(found,))


def _expected_networks(service: Service, network_names: dict[str, str]) -> set[str]:
    if service.network_mode:
        return set()
    return {network_names[key] for key in service.network_names() if key in network_names}


def _is_current(c: ContainerRef, fp: str, expected_networks: set[str]) -> bool:
    """A container is current only once it runs with every membership attached.

    The fingerprint label is written at creation, so a failed start or a
    failed connect leaves a matching label on an incomplete container.
    """
    return (
        c.labels.get(LABEL_CONFIG_HASH) == fp
        and c.state == "running"
        and expected_networks.issubset(c.networks)
    )


def _service_action(
    project: str, service: Service, existing: list[ContainerRef], network_names: dict[str, str]
) -> Action:
    fp = fingerprint(service)
    name = container_identity(project, service)
    if not existing:
        return Action(KIND_CONTAINER, Op.CREATE, service.name, name, service, fp)
    # More than one live instance is treated as drift: every instance is replaced.
    if len(existing) == 1 and _is_current(existing[0], fp, _expected_networks(service, network_names)):
        return Action(KIND_CONTAINER, Op.KEEP, service.name, name, service, fp, tuple(existing))
    return Action(KIND_CONTAINER, Op.REPLACE, service.name, name, service, fp, tuple(existing))


def build_plan(project: Project, inventory: Inventory, runtime) -> Plan:
    plan = Plan(project=project.name)

    for key, cfg in project.networks.items():
        plan.networks.append(_network_action(runtime, key, cfg))
    if DEFAULT_NETWORK not in project.networks:
        implicit = NetworkConfig(name=default_network_name(project.name))
        plan.networks.append(_network_action(runtime, DEFAULT_NETWORK, implicit))

    for key, cfg in project.volumes.items():
        plan.volumes.append(_volume_action(runtime, project.name, key, cfg))

    network_names = plan.network_names()
    for service in project.services:
        existing = inventory.containers.get(service.name, [])
        plan.services.append(_service_action(project.name, service, existing, network_names))

    for name in sorted(inventory.containers):
        if project.service(name) is None:
            refs = inventory.containers[name]
            plan.orphans.append(Action(KIND_CONTAINER, Op.REMOVE, name, refs[0].name, existing=tuple(refs)))

    logger.info("Plan for %s: %d change(s)", project.name, len(plan.changes()))
    return plan
