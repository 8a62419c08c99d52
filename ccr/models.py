from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from .errors import ConfigTranslationError


@dataclass(frozen=True)
class ServicePort:
    target: int
    published: str | None = None
    protocol: str = "tcp"
    host_ip: str | None = None

    @property
    def key(self) -> str:
        return f"{self.target}/{self.protocol}"


@dataclass(frozen=True)
class BindMount:
    source: str
    target: str
    read_only: bool = False
    propagation: str | None = None
    consistency: str | None = None
    type: str = field(default="bind", init=False)


@dataclass(frozen=True)
class VolumeMount:
    target: str
    # None means an anonymous volume.
    source: str | None = None
    read_only: bool = False
    no_copy: bool = False
    consistency: str | None = None
    type: str = field(default="volume", init=False)


@dataclass(frozen=True)
class TmpfsMount:
    target: str
    size: str | int | None = None
    read_only: bool = False
    type: str = field(default="tmpfs", init=False)


MountSpec = Union[BindMount, VolumeMount, TmpfsMount]


@dataclass(frozen=True)
class FileReference:
    """A service's reference to a top-level config or secret."""

    source: str
    target: str | None = None


@dataclass(frozen=True)
class ServiceNetwork:
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class Service:
    name: str
    image: str
    container_name: str | None = None
    command: tuple[str, ...] | None = None
    entrypoint: tuple[str, ...] | None = None
    environment: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)

    hostname: str | None = None
    domainname: str | None = None
    user: str | None = None
    tty: bool = False
    stdin_open: bool = False
    working_dir: str | None = None
    mac_address: str | None = None
    stop_signal: str | None = None

    network_mode: str | None = None
    # Ordered; empty means implicit membership of the "default" network.
    networks: dict[str, ServiceNetwork] = field(default_factory=dict)
    ports: tuple[ServicePort, ...] = ()
    volumes: tuple[MountSpec, ...] = ()
    configs: tuple[FileReference, ...] = ()
    secrets: tuple[FileReference, ...] = ()

    restart: str | None = None
    cap_add: tuple[str, ...] = ()
    cap_drop: tuple[str, ...] = ()
    dns: tuple[str, ...] = ()
    dns_search: tuple[str, ...] = ()
    extra_hosts: tuple[str, ...] = ()
    ipc: str | None = None
    pid: str | None = None
    userns_mode: str | None = None
    privileged: bool = False
    read_only: bool = False
    security_opt: tuple[str, ...] = ()
    shm_size: str | int | None = None
    sysctls: dict[str, str] = field(default_factory=dict)
    isolation: str | None = None
    init: bool | None = None
    mem_limit: str | int | None = None
    cpus: float | None = None

    def network_names(self) -> list[str]:
        if self.networks:
            return list(self.networks)
        return ["default"]


@dataclass(frozen=True)
class IpamConfig:
    driver: str | None = None
    subnets: tuple[str, ...] = ()


@dataclass(frozen=True)
class NetworkConfig:
    name: str | None = None
    driver: str | None = None
    driver_opts: dict[str, str] = field(default_factory=dict)
    ipam: IpamConfig | None = None
    external: bool = False
    internal: bool = False
    attachable: bool = False
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VolumeConfig:
    name: str | None = None
    driver: str | None = None
    driver_opts: dict[str, str] = field(default_factory=dict)
    external: bool = False
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FileObjectConfig:
    """Top-level config or secret: a named file on the host."""

    file: str
    name: str | None = None


@dataclass(frozen=True)
class Project:
    name: str
    working_dir: str
    services: tuple[Service, ...] = ()
    networks: dict[str, NetworkConfig] = field(default_factory=dict)
    volumes: dict[str, VolumeConfig] = field(default_factory=dict)
    configs: dict[str, FileObjectConfig] = field(default_factory=dict)
    secrets: dict[str, FileObjectConfig] = field(default_factory=dict)

    def service(self, name: str) -> Service | None:
        for s in self.services:
            if s.name == name:
                return s
        return None

    def external_networks(self) -> set[str]:
        return {key for key, n in self.networks.items() if n.external}

    def external_volumes(self) -> set[str]:
        return {key for key, v in self.volumes.items() if v.external}


class BindingTable:
    """Config/secret name -> host file, built once per run."""

    def __init__(self, configs: dict[str, str] | None = None, secrets: dict[str, str] | None = None):
        self.configs: dict[str, str] = dict(configs or {})
        self.secrets: dict[str, str] = dict(secrets or {})

    @classmethod
    def from_project(cls, project: Project) -> "BindingTable":
        return cls(_bindings(project.configs), _bindings(project.secrets))

    def config_file(self, service: str, name: str) -> str:
        try:
            return self.configs[name]
        except KeyError:
            raise ConfigTranslationError(service, "configs", f"couldn't find reference {name!r}") from None

    def secret_file(self, service: str, name: str) -> str:
        try:
            return self.secrets[name]
        except KeyError:
            raise ConfigTranslationError(service, "secrets", f"couldn't find reference {name!r}") from None


def _bindings(objects: dict[str, FileObjectConfig]) -> dict[str, str]:
    # Services reference the top-level key; an explicit `name` is accepted too.
    out: dict[str, str] = {}
    for key, obj in objects.items():
        out[key] = obj.file
        if obj.name:
            out.setdefault(obj.name, obj.file)
    return out
