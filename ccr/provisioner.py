"""Translate declared resources into runtime requests and apply a plan."""
from __future__ import annotations

import logging
import os
from typing import Any, Callable

from docker.errors import DockerException
from docker.types import Mount
from docker.utils import parse_bytes

from .docker_ops import ExecutionUnitSpec
from .errors import ConfigTranslationError
from .labels import (
    KIND_CONTAINER,
    KIND_NETWORK,
    KIND_VOLUME,
    LABEL_CONFIG_HASH,
    container_identity,
    identity_labels,
    short_id,
)
from .models import BindMount, BindingTable, FileReference, MountSpec, Project, Service, TmpfsMount, VolumeMount
from .planner import Action, Op, Plan
from .progress import Progress
from .settings import settings
from .teardown import stop_and_remove

logger = logging.getLogger(__name__)

DEFAULT_DRIVER = "bridge"
RESTART_POLICIES = {"no", "always", "unless-stopped", "on-failure"}
SECRETS_DIR = "/run/secrets"


def _compact(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None and v != [] and v != {}}


# -- networks and volumes -------------------------------------------------


def network_create_request(project: str, action: Action) -> dict[str, Any]:
    cfg = action.desired
    labels = dict(cfg.labels)
    labels.update(identity_labels(project, KIND_NETWORK, action.key))
    request: dict[str, Any] = {
        "name": action.name,
        "driver": cfg.driver or DEFAULT_DRIVER,
        "options": dict(cfg.driver_opts),
        "internal": cfg.internal,
        "attachable": cfg.attachable,
        "labels": labels,
    }
    if cfg.ipam is not None and (cfg.ipam.driver or cfg.ipam.subnets):
        request["ipam"] = {"driver": cfg.ipam.driver, "subnets": list(cfg.ipam.subnets)}
    return request


def volume_create_request(project: str, action: Action) -> dict[str, Any]:
    cfg = action.desired
    labels = dict(cfg.labels)
    labels.update(identity_labels(project, KIND_VOLUME, action.key))
    return {
        "name": action.name,
        "driver": cfg.driver,
        "driver_opts": dict(cfg.driver_opts),
        "labels": labels,
    }


# -- containers -----------------------------------------------------------


def parse_size(service: str, field: str, value: str | int | None) -> int | None:
    """Human-readable size ("64m", "1g", 1024) to bytes."""
    if value is None or value == "":
        return None
    try:
        size = parse_bytes(value)
    except DockerException as e:
        raise ConfigTranslationError(service, field, f"invalid size {value!r}") from e
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        raise ConfigTranslationError(service, field, f"invalid size {value!r}")
    return size


def restart_policy(service: Service) -> dict[str, Any] | None:
    if not service.restart:
        return None
    name, _, count = service.restart.partition(":")
    if name not in RESTART_POLICIES:
        raise ConfigTranslationError(service.name, "restart", f"unknown policy {service.restart!r}")
    policy: dict[str, Any] = {"Name": name}
    if count:
        if name != "on-failure" or not count.isdigit():
            raise ConfigTranslationError(service.name, "restart", f"invalid policy {service.restart!r}")
        policy["MaximumRetryCount"] = int(count)
    return policy


def translate_ports(service: Service) -> tuple[list[tuple[int, str]], dict[str, list[Any]]]:
    """Exposed target/protocol pairs, and host bindings keyed by "target/proto".

    Unpublished ports get a binding with no host port; the runtime picks one.
    """
    exposed: list[tuple[int, str]] = []
    bindings: dict[str, list[Any]] = {}
    for p in service.ports:
        pair = (p.target, p.protocol)
        if pair not in exposed:
            exposed.append(pair)
        if p.published and p.host_ip:
            binding: Any = (p.host_ip, p.published)
        elif p.published:
            binding = p.published
        elif p.host_ip:
            binding = (p.host_ip,)
        else:
            binding = None
        bindings.setdefault(p.key, []).append(binding)
    return exposed, bindings


def _resolve(working_dir: str, source: str) -> str:
    if os.path.isabs(source):
        return source
    return os.path.normpath(os.path.join(working_dir, source))


def _bind_mount(m: BindMount, service: Service, working_dir: str, volume_names: dict[str, str]) -> Mount:
    return Mount(
        target=m.target,
        source=_resolve(working_dir, m.source),
        type="bind",
        read_only=m.read_only,
        consistency=m.consistency,
        propagation=m.propagation,
    )


def _volume_mount(m: VolumeMount, service: Service, working_dir: str, volume_names: dict[str, str]) -> Mount:
    source = None
    if m.source:
        try:
            source = volume_names[m.source]
        except KeyError:
            raise ConfigTranslationError(service.name, "volumes", f"undeclared volume {m.source!r}") from None
    return Mount(
        target=m.target,
        source=source,
        type="volume",
        read_only=m.read_only,
        consistency=m.consistency,
        no_copy=m.no_copy,
    )


def _tmpfs_mount(m: TmpfsMount, service: Service, working_dir: str, volume_names: dict[str, str]) -> Mount:
    return Mount(
        target=m.target,
        source=None,
        type="tmpfs",
        read_only=m.read_only,
        tmpfs_size=parse_size(service.name, "tmpfs size", m.size),
    )


_MOUNT_TRANSLATORS: dict[type, Callable[..., Mount]] = {
    BindMount: _bind_mount,
    VolumeMount: _volume_mount,
    TmpfsMount: _tmpfs_mount,
}


def translate_mount(m: MountSpec, service: Service, working_dir: str, volume_names: dict[str, str]) -> Mount:
    try:
        translate = _MOUNT_TRANSLATORS[type(m)]
    except KeyError:
        raise ConfigTranslationError(service.name, "volumes", f"unsupported mount {m!r}") from None
    return translate(m, service, working_dir, volume_names)


def _file_mounts(
    refs: tuple[FileReference, ...],
    lookup: Callable[[str, str], str],
    default_target: Callable[[FileReference, str], str],
    service: Service,
    working_dir: str,
) -> list[Mount]:
    mounts = []
    for ref in refs:
        file = lookup(service.name, ref.source)
        target = ref.target or default_target(ref, file)
        mounts.append(Mount(target=target, source=_resolve(working_dir, file), type="bind", read_only=True))
    return mounts


def _config_target(ref: FileReference, file: str) -> str:
    return os.path.normpath(os.path.join("/", file))


def _secret_target(ref: FileReference, file: str) -> str:
    return f"{SECRETS_DIR}/{ref.source}"


def translate_mounts(
    service: Service, working_dir: str, volume_names: dict[str, str], bindings: BindingTable
) -> list[Mount]:
    mounts = [translate_mount(m, service, working_dir, volume_names) for m in service.volumes]
    mounts += _file_mounts(service.configs, bindings.config_file, _config_target, service, working_dir)
    mounts += _file_mounts(service.secrets, bindings.secret_file, _secret_target, service, working_dir)
    return mounts


def select_network(service: Service, network_names: dict[str, str]) -> tuple[str, str | None]:
    """Return (network mode, primary network name or None).

    An explicit service mode is used verbatim; otherwise the first declared
    membership that exists in the project wins; otherwise "none".
    """
    if service.network_mode:
        if service.network_mode == "disabled":
            return "none", None
        return service.network_mode, None
    if network_names:
        for key in service.network_names():
            if key in network_names:
                return network_names[key], network_names[key]
    return "none", None


def secondary_networks(service: Service, network_names: dict[str, str], primary: str | None) -> list[tuple[str, str]]:
    """(logical key, runtime name) for memberships connected after start."""
    if service.network_mode:
        return []
    out = []
    for key in service.network_names():
        if key not in network_names:
            raise ConfigTranslationError(service.name, "networks", f"undefined network {key!r}")
        if network_names[key] != primary:
            out.append((key, network_names[key]))
    return out


def endpoint_aliases(service: Service, key: str, container_id: str = "") -> list[str]:
    aliases = [service.name]
    if container_id:
        aliases.append(short_id(container_id))
    membership = service.networks.get(key)
    if membership is not None:
        aliases.extend(membership.aliases)
    return aliases


def translate_service(
    project: Project,
    service: Service,
    fingerprint: str,
    network_names: dict[str, str],
    volume_names: dict[str, str],
    bindings: BindingTable,
) -> ExecutionUnitSpec:
    mode, primary = select_network(service, network_names)
    # Validates every declared membership before anything is created.
    secondary_networks(service, network_names, primary)
    exposed, port_bindings = translate_ports(service)

    labels = dict(service.labels)
    labels.update(identity_labels(project.name, KIND_CONTAINER, service.name))
    labels[LABEL_CONFIG_HASH] = fingerprint

    config = _compact(
        {
            "image": service.image,
            "command": list(service.command) if service.command is not None else None,
            "entrypoint": list(service.entrypoint) if service.entrypoint is not None else None,
            "hostname": service.hostname,
            "domainname": service.domainname,
            "user": service.user,
            "tty": service.tty,
            "stdin_open": service.stdin_open,
            "working_dir": service.working_dir,
            "mac_address": service.mac_address,
            "stop_signal": service.stop_signal,
            "environment": dict(service.environment),
            "network_disabled": service.network_mode == "disabled",
            "ports": exposed,
            "labels": labels,
        }
    )
    host_config = _compact(
        {
            "network_mode": mode,
            "restart_policy": restart_policy(service),
            "port_bindings": port_bindings,
            "mounts": translate_mounts(service, project.working_dir, volume_names, bindings),
            "cap_add": list(service.cap_add),
            "cap_drop": list(service.cap_drop),
            "dns": list(service.dns),
            "dns_search": list(service.dns_search),
            "extra_hosts": list(service.extra_hosts),
            "ipc_mode": service.ipc,
            "pid_mode": service.pid,
            "userns_mode": service.userns_mode,
            "privileged": service.privileged,
            "read_only": service.read_only,
            "security_opt": list(service.security_opt),
            "shm_size": parse_size(service.name, "shm_size", service.shm_size),
            "sysctls": dict(service.sysctls),
            "isolation": service.isolation,
            "init": service.init,
            "mem_limit": parse_size(service.name, "mem_limit", service.mem_limit),
            "nano_cpus": int(service.cpus * 1e9) if service.cpus else None,
        }
    )
    aliases = endpoint_aliases(service, _primary_key(service, network_names, primary)) if primary else []
    return ExecutionUnitSpec(
        service=service.name,
        name=container_identity(project.name, service),
        config=config,
        host_config=host_config,
        primary_network=primary,
        aliases=aliases,
    )


def _primary_key(service: Service, network_names: dict[str, str], primary: str) -> str:
    for key in service.network_names():
        if network_names.get(key) == primary:
            return key
    return ""


class Provisioner:
    """Applies a plan to the runtime, one resource at a time.

    There is no rollback: anything created before a failure stays and is
    reconciled by the next run.
    """

    def __init__(
        self,
        runtime,
        project: Project,
        bindings: BindingTable,
        progress: Progress | None = None,
        stop_timeout: int | None = None,
        pull_missing: bool | None = None,
    ):
        self.runtime = runtime
        self.project = project
        self.bindings = bindings
        self.progress = progress or Progress()
        self.stop_timeout = settings.stop_timeout_s if stop_timeout is None else stop_timeout
        self.pull_missing = settings.pull_missing if pull_missing is None else pull_missing

    def apply(self, plan: Plan) -> None:
        network_names = plan.network_names()
        volume_names = plan.volume_names()

        # Translate every service first so a bad field aborts before any mutation.
        specs: dict[str, ExecutionUnitSpec] = {}
        for action in plan.services:
            if action.op is Op.KEEP:
                continue
            specs[action.key] = translate_service(
                self.project, action.desired, action.fingerprint, network_names, volume_names, self.bindings
            )

        for action in plan.networks:
            self.ensure_network(action)
        for action in plan.volumes:
            self.ensure_volume(action)
        for action in plan.orphans:
            stop_and_remove(self.runtime, action.key, list(action.existing), self.stop_timeout, self.progress)
        for action in plan.services:
            if action.op is Op.KEEP:
                logger.debug("Service %s is up to date", action.key)
                continue
            if action.op is Op.REPLACE:
                stop_and_remove(self.runtime, action.key, list(action.existing), self.stop_timeout, self.progress)
            self.create_service(action.desired, specs[action.key], network_names)

    def ensure_network(self, action: Action) -> None:
        if action.op is Op.VERIFY:
            self.progress.line(f"Network {action.name} declared as external. No new network will be created.")
            return
        if action.op is Op.KEEP:
            return
        request = network_create_request(self.project.name, action)
        ref = self.runtime.create_network(**request)
        self.progress.action(f"Creating network {action.name} with {request['driver']} driver", short_id(ref.id))

    def ensure_volume(self, action: Action) -> None:
        if action.op is Op.VERIFY:
            self.progress.line(f"Volume {action.name} declared as external. No new volume will be created.")
            return
        if action.op is Op.KEEP:
            return
        request = volume_create_request(self.project.name, action)
        ref = self.runtime.create_volume(**request)
        self.progress.action(f"Creating volume {action.key!r} with {request['driver'] or 'local'} driver", ref.name)

    def ensure_image(self, image: str) -> None:
        if self.runtime.image_present(image):
            return
        if not self.pull_missing:
            logger.info("Image %s is not present locally", image)
            return
        self.progress.line(f"Pulling image {image}")
        self.runtime.pull_image(image)

    def create_service(self, service: Service, spec: ExecutionUnitSpec, network_names: dict[str, str]) -> str:
        self.ensure_image(service.image)
        container_id = self.runtime.create_container(spec)
        self.runtime.start_container(container_id, service.name)
        for key, name in secondary_networks(service, network_names, spec.primary_network):
            self.runtime.connect_network(name, container_id, endpoint_aliases(service, key, container_id))
        self.progress.action(f"Creating container for service {service.name}", short_id(container_id))
        return container_id
