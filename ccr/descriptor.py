"""Load a compose file into immutable project records.

Only the subset of the Compose format the reconciler acts on is modeled;
unknown keys are ignored and `x-*` extension keys are dropped.
"""
from __future__ import annotations

import logging
import os
import re
import shlex
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import DescriptorError
from .models import (
    BindMount,
    FileObjectConfig,
    FileReference,
    IpamConfig,
    MountSpec,
    NetworkConfig,
    Project,
    Service,
    ServiceNetwork,
    ServicePort,
    TmpfsMount,
    VolumeConfig,
    VolumeMount,
)

logger = logging.getLogger(__name__)

PROJECT_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_\-]*$")
SERVICE_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")

Scalar = Union[str, int, float, bool, None]


def validate_project_name(name: str) -> None:
    if not PROJECT_NAME_RE.match(name):
        raise DescriptorError(
            f"Invalid project name {name!r}. Use lowercase letters, digits, '-' and '_', starting with a letter or digit."
        )


def normalize_project_name(raw: str) -> str:
    return re.sub(r"[^a-z0-9_\-]", "", raw.lower()).lstrip("-_")


def _scalar_str(v: Scalar) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


# -- schema ---------------------------------------------------------------


class _Schema(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PortSchema(_Schema):
    target: int = Field(..., ge=1, le=65535)
    published: Optional[Union[str, int]] = None
    protocol: str = "tcp"
    host_ip: Optional[str] = None


class BindOptionsSchema(_Schema):
    propagation: Optional[str] = None


class VolumeOptionsSchema(_Schema):
    nocopy: bool = False


class TmpfsOptionsSchema(_Schema):
    size: Optional[Union[str, int]] = None


class MountSchema(_Schema):
    type: str = "volume"
    source: Optional[str] = None
    target: str
    read_only: bool = False
    consistency: Optional[str] = None
    bind: Optional[BindOptionsSchema] = None
    volume: Optional[VolumeOptionsSchema] = None
    tmpfs: Optional[TmpfsOptionsSchema] = None


class FileRefSchema(_Schema):
    source: str
    target: Optional[str] = None


class ServiceNetworkSchema(_Schema):
    aliases: list[str] = Field(default_factory=list)


class ServiceSchema(_Schema):
    image: str = Field(..., min_length=1, description="Image reference (name:tag); builds are not supported")
    container_name: Optional[str] = None
    command: Optional[Union[str, list[str]]] = None
    entrypoint: Optional[Union[str, list[str]]] = None
    environment: Union[dict[str, Scalar], list[str]] = Field(default_factory=dict)
    labels: Union[dict[str, Scalar], list[str]] = Field(default_factory=dict)

    hostname: Optional[str] = None
    domainname: Optional[str] = None
    user: Optional[str] = None
    tty: bool = False
    stdin_open: bool = False
    working_dir: Optional[str] = None
    mac_address: Optional[str] = None
    stop_signal: Optional[str] = None

    network_mode: Optional[str] = None
    networks: Union[list[str], dict[str, Optional[ServiceNetworkSchema]]] = Field(default_factory=list)
    ports: list[Union[int, str, PortSchema]] = Field(default_factory=list)
    volumes: list[Union[str, MountSchema]] = Field(default_factory=list)
    tmpfs: Union[str, list[str]] = Field(default_factory=list)
    configs: list[Union[str, FileRefSchema]] = Field(default_factory=list)
    secrets: list[Union[str, FileRefSchema]] = Field(default_factory=list)

    restart: Optional[str] = None
    cap_add: list[str] = Field(default_factory=list)
    cap_drop: list[str] = Field(default_factory=list)
    dns: Union[str, list[str]] = Field(default_factory=list)
    dns_search: Union[str, list[str]] = Field(default_factory=list)
    extra_hosts: Union[list[str], dict[str, str]] = Field(default_factory=list)
    ipc: Optional[str] = None
    pid: Optional[str] = None
    userns_mode: Optional[str] = None
    privileged: bool = False
    read_only: bool = False
    security_opt: list[str] = Field(default_factory=list)
    shm_size: Optional[Union[str, int]] = None
    sysctls: Union[dict[str, Scalar], list[str]] = Field(default_factory=dict)
    isolation: Optional[str] = None
    init: Optional[bool] = None
    mem_limit: Optional[Union[str, int]] = None
    cpus: Optional[float] = Field(None, gt=0)


class IpamPoolSchema(_Schema):
    subnet: Optional[str] = None


class IpamSchema(_Schema):
    driver: Optional[str] = None
    config: list[IpamPoolSchema] = Field(default_factory=list)


class ExternalSchema(_Schema):
    name: Optional[str] = None


class NetworkSchema(_Schema):
    name: Optional[str] = None
    driver: Optional[str] = None
    driver_opts: dict[str, Scalar] = Field(default_factory=dict)
    ipam: Optional[IpamSchema] = None
    external: Union[bool, ExternalSchema] = False
    internal: bool = False
    attachable: bool = False
    labels: Union[dict[str, Scalar], list[str]] = Field(default_factory=dict)


class VolumeSchema(_Schema):
    name: Optional[str] = None
    driver: Optional[str] = None
    driver_opts: dict[str, Scalar] = Field(default_factory=dict)
    external: Union[bool, ExternalSchema] = False
    labels: Union[dict[str, Scalar], list[str]] = Field(default_factory=dict)


class FileObjectSchema(_Schema):
    file: Optional[str] = None
    name: Optional[str] = None


class ComposeSchema(_Schema):
    name: Optional[str] = None
    services: dict[str, ServiceSchema]
    networks: dict[str, Optional[NetworkSchema]] = Field(default_factory=dict)
    volumes: dict[str, Optional[VolumeSchema]] = Field(default_factory=dict)
    configs: dict[str, FileObjectSchema] = Field(default_factory=dict)
    secrets: dict[str, FileObjectSchema] = Field(default_factory=dict)

    @field_validator("services")
    @classmethod
    def validate_service_names(cls, v: dict[str, ServiceSchema]) -> dict[str, ServiceSchema]:
        for name in v:
            if not SERVICE_NAME_RE.match(name):
                raise ValueError(f"invalid service name {name!r}")
        return v


# -- short syntax ---------------------------------------------------------


def _mapping(value: Union[dict[str, Scalar], list[str]], sep: str = "=") -> dict[str, str]:
    if isinstance(value, dict):
        return {k: _scalar_str(v) for k, v in value.items() if v is not None}
    out: dict[str, str] = {}
    for item in value:
        key, has_value, val = item.partition(sep)
        if has_value:
            out[key] = val
    return out


def _environment(value: Union[dict[str, Scalar], list[str]]) -> dict[str, str]:
    if isinstance(value, dict):
        pairs = list(value.items())
    else:
        pairs = []
        for item in value:
            key, has_value, val = item.partition("=")
            pairs.append((key, val if has_value else None))
    out: dict[str, str] = {}
    for key, raw in pairs:
        # Entries without a value are taken from the caller's environment.
        if raw is None:
            if key in os.environ:
                out[key] = os.environ[key]
        else:
            out[key] = _scalar_str(raw)
    return out


def _split_command(value: Union[str, list[str], None]) -> Optional[tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        return tuple(shlex.split(value))
    return tuple(value)


def _as_tuple(value: Union[str, list[str]]) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    return tuple(value)


def parse_port(value: Union[int, str, PortSchema]) -> ServicePort:
    if isinstance(value, PortSchema):
        published = str(value.published) if value.published not in (None, "") else None
        return ServicePort(target=value.target, published=published, protocol=value.protocol, host_ip=value.host_ip)
    if isinstance(value, int):
        return ServicePort(target=value)
    spec, _, protocol = value.partition("/")
    parts = spec.split(":")
    if len(parts) == 1:
        host_ip, published, target = None, None, parts[0]
    elif len(parts) == 2:
        host_ip, published, target = None, parts[0], parts[1]
    elif len(parts) == 3:
        host_ip, published, target = parts
    else:
        raise DescriptorError(f"Invalid port {value!r}.")
    if not target.isdigit() or not 0 < int(target) <= 65535:
        raise DescriptorError(f"Invalid port {value!r}: target must be a single port number.")
    return ServicePort(
        target=int(target),
        published=published or None,
        protocol=protocol or "tcp",
        host_ip=host_ip or None,
    )


def _is_path(source: str) -> bool:
    return source.startswith(("/", ".", "~"))


def parse_mount(value: Union[str, MountSchema]) -> MountSpec:
    if isinstance(value, MountSchema):
        if value.type == "bind":
            if not value.source:
                raise DescriptorError(f"Bind mount for {value.target} has no source.")
            return BindMount(
                source=os.path.expanduser(value.source),
                target=value.target,
                read_only=value.read_only,
                propagation=value.bind.propagation if value.bind else None,
                consistency=value.consistency,
            )
        if value.type == "volume":
            return VolumeMount(
                target=value.target,
                source=value.source,
                read_only=value.read_only,
                no_copy=value.volume.nocopy if value.volume else False,
                consistency=value.consistency,
            )
        if value.type == "tmpfs":
            return TmpfsMount(
                target=value.target,
                size=value.tmpfs.size if value.tmpfs else None,
                read_only=value.read_only,
            )
        raise DescriptorError(f"Unsupported mount type {value.type!r}.")

    parts = value.split(":")
    if len(parts) == 1:
        return VolumeMount(target=parts[0])
    if len(parts) > 3:
        raise DescriptorError(f"Invalid volume {value!r}.")
    source, target = parts[0], parts[1]
    options = set(parts[2].split(",")) if len(parts) == 3 else set()
    read_only = "ro" in options
    if _is_path(source):
        return BindMount(source=os.path.expanduser(source), target=target, read_only=read_only)
    return VolumeMount(target=target, source=source, read_only=read_only, no_copy="nocopy" in options)


def _file_ref(value: Union[str, FileRefSchema]) -> FileReference:
    if isinstance(value, str):
        return FileReference(source=value)
    return FileReference(source=value.source, target=value.target)


def _service_networks(value: Union[list[str], dict[str, Optional[ServiceNetworkSchema]]]) -> dict[str, ServiceNetwork]:
    if isinstance(value, list):
        return {name: ServiceNetwork() for name in value}
    return {name: ServiceNetwork(aliases=tuple(n.aliases) if n else ()) for name, n in value.items()}


def _extra_hosts(value: Union[list[str], dict[str, str]]) -> tuple[str, ...]:
    if isinstance(value, dict):
        return tuple(f"{host}:{ip}" for host, ip in value.items())
    return tuple(h.replace("=", ":", 1) if "=" in h else h for h in value)


def build_service(name: str, s: ServiceSchema) -> Service:
    tmpfs = tuple(TmpfsMount(target=t) for t in _as_tuple(s.tmpfs))
    return Service(
        name=name,
        image=s.image,
        container_name=s.container_name,
        command=_split_command(s.command),
        entrypoint=_split_command(s.entrypoint),
        environment=_environment(s.environment),
        labels=_mapping(s.labels),
        hostname=s.hostname,
        domainname=s.domainname,
        user=s.user,
        tty=s.tty,
        stdin_open=s.stdin_open,
        working_dir=s.working_dir,
        mac_address=s.mac_address,
        stop_signal=s.stop_signal,
        network_mode=s.network_mode,
        networks=_service_networks(s.networks),
        ports=tuple(parse_port(p) for p in s.ports),
        volumes=tuple(parse_mount(v) for v in s.volumes) + tmpfs,
        configs=tuple(_file_ref(c) for c in s.configs),
        secrets=tuple(_file_ref(c) for c in s.secrets),
        restart=s.restart,
        cap_add=tuple(s.cap_add),
        cap_drop=tuple(s.cap_drop),
        dns=_as_tuple(s.dns),
        dns_search=_as_tuple(s.dns_search),
        extra_hosts=_extra_hosts(s.extra_hosts),
        ipc=s.ipc,
        pid=s.pid,
        userns_mode=s.userns_mode,
        privileged=s.privileged,
        read_only=s.read_only,
        security_opt=tuple(s.security_opt),
        shm_size=s.shm_size,
        sysctls=_mapping(s.sysctls),
        isolation=s.isolation,
        init=s.init,
        mem_limit=s.mem_limit,
        cpus=s.cpus,
    )


def _external(value: Union[bool, ExternalSchema], name: Optional[str]) -> tuple[bool, Optional[str]]:
    if isinstance(value, ExternalSchema):
        return True, value.name or name
    return bool(value), name


def build_network(n: Optional[NetworkSchema]) -> NetworkConfig:
    if n is None:
        return NetworkConfig()
    external, name = _external(n.external, n.name)
    ipam = None
    if n.ipam is not None:
        ipam = IpamConfig(driver=n.ipam.driver, subnets=tuple(p.subnet for p in n.ipam.config if p.subnet))
    return NetworkConfig(
        name=name,
        driver=n.driver,
        driver_opts=_mapping(n.driver_opts),
        ipam=ipam,
        external=external,
        internal=n.internal,
        attachable=n.attachable,
        labels=_mapping(n.labels),
    )


def build_volume(v: Optional[VolumeSchema]) -> VolumeConfig:
    if v is None:
        return VolumeConfig()
    external, name = _external(v.external, v.name)
    return VolumeConfig(
        name=name,
        driver=v.driver,
        driver_opts=_mapping(v.driver_opts),
        external=external,
        labels=_mapping(v.labels),
    )


def _file_objects(objects: dict[str, FileObjectSchema], kind: str) -> dict[str, FileObjectConfig]:
    out = {}
    for key, obj in objects.items():
        if not obj.file:
            logger.warning("%s %s has no file; only file-based %ss are supported", kind.capitalize(), key, kind)
            continue
        out[key] = FileObjectConfig(file=obj.file, name=obj.name)
    return out


# -- loading --------------------------------------------------------------


def _strip_extensions(data: dict[str, Any]) -> dict[str, Any]:
    out = {k: v for k, v in data.items() if not str(k).startswith("x-")}
    services = out.get("services")
    if isinstance(services, dict):
        out["services"] = {
            name: ({k: v for k, v in s.items() if not str(k).startswith("x-")} if isinstance(s, dict) else s)
            for name, s in services.items()
        }
    return out


def resolve_project_name(path: str, explicit: Optional[str] = None, declared: Optional[str] = None) -> str:
    """Explicit name, else the file's top-level `name`, else its directory name."""
    if explicit:
        validate_project_name(explicit)
        return explicit
    if declared:
        validate_project_name(declared)
        return declared
    directory = os.path.basename(os.path.dirname(os.path.abspath(path)))
    name = normalize_project_name(directory)
    if not name:
        raise DescriptorError(f"Cannot derive a project name from directory {directory!r}; pass one explicitly.")
    return name


def parse_project(data: Any, path: str, project_name: Optional[str] = None) -> Project:
    if not isinstance(data, dict):
        raise DescriptorError(f"{path}: top-level element must be a mapping.")
    try:
        doc = ComposeSchema.model_validate(_strip_extensions(data))
    except ValidationError as e:
        raise DescriptorError(f"{path}: {e}") from e

    return Project(
        name=resolve_project_name(path, project_name, doc.name),
        working_dir=os.path.dirname(os.path.abspath(path)),
        services=tuple(build_service(name, s) for name, s in doc.services.items()),
        networks={key: build_network(n) for key, n in doc.networks.items()},
        volumes={key: build_volume(v) for key, v in doc.volumes.items()},
        configs=_file_objects(doc.configs, "config"),
        secrets=_file_objects(doc.secrets, "secret"),
    )


def load_project(path: str, project_name: Optional[str] = None) -> Project:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise DescriptorError(f"Cannot read compose file {path}: {e.strerror or e}") from e
    except yaml.YAMLError as e:
        raise DescriptorError(f"{path}: invalid YAML: {e}") from e
    project = parse_project(data, path, project_name)
    logger.info("Loaded project %s with %d service(s) from %s", project.name, len(project.services), path)
    return project
