from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.types import IPAMConfig, IPAMPool

from .errors import ConfigTranslationError, ConnectivityError, ResourceInUse, RuntimeRequestError, ServiceStartError

logger = logging.getLogger(__name__)

# Status codes the daemon uses when a removal is blocked by a dependent.
IN_USE_STATUS = {403, 409}


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)
    state: str = ""
    # Runtime names of the networks the container is attached to.
    networks: tuple[str, ...] = ()


@dataclass(frozen=True)
class NetworkRef:
    id: str
    name: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class VolumeRef:
    name: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass
class ExecutionUnitSpec:
    """Everything needed to create one container for a service."""

    service: str
    name: str
    # Keyword arguments for the container create call (image, command, ports, ...).
    config: dict[str, Any]
    # Keyword arguments for the host config (network_mode, mounts, port_bindings, ...).
    host_config: dict[str, Any]
    # Network attached at creation time, None when an explicit mode is used.
    primary_network: str | None = None
    aliases: list[str] = field(default_factory=list)


@contextmanager
def _runtime_call(what: str) -> Iterator[None]:
    try:
        yield
    except requests.exceptions.ConnectionError as e:
        raise ConnectivityError(f"Docker is not reachable ({what}): {e}") from e
    except APIError as e:
        raise RuntimeRequestError(f"{what} failed: {e.explanation or e}") from e
    except DockerException as e:
        raise ConnectivityError(f"Docker is not reachable ({what}): {e}") from e


def _in_use(e: APIError) -> bool:
    return e.status_code in IN_USE_STATUS


class DockerRuntime:
    """Synchronous adapter over the Docker Engine API.

    Absence is reported as None, never as an exception; every other failure
    is translated into the reconciler's error taxonomy.
    """

    def __init__(self, client: docker.DockerClient):
        self.client = client

    @classmethod
    def from_env(cls) -> "DockerRuntime":
        try:
            client = docker.from_env()
            client.ping()
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise ConnectivityError(
                f"Docker is not available. Start Docker Desktop / docker daemon and try again. ({e})"
            ) from e
        return cls(client)

    # -- inventory --------------------------------------------------------

    def list_containers(self, label_filters: list[str]) -> list[ContainerRef]:
        with _runtime_call("list containers"):
            containers = self.client.containers.list(all=True, filters={"label": label_filters}, ignore_removed=True)
        return [
            ContainerRef(
                id=c.id,
                name=c.name,
                labels=c.labels,
                state=c.status,
                networks=tuple((c.attrs.get("NetworkSettings") or {}).get("Networks") or {}),
            )
            for c in containers
        ]

    def list_networks(self, label_filters: list[str]) -> list[NetworkRef]:
        with _runtime_call("list networks"):
            networks = self.client.networks.list(filters={"label": label_filters})
        return [NetworkRef(id=n.id, name=n.name, labels=n.attrs.get("Labels") or {}) for n in networks]

    def list_volumes(self, label_filters: list[str]) -> list[VolumeRef]:
        with _runtime_call("list volumes"):
            volumes = self.client.volumes.list(filters={"label": label_filters})
        return [VolumeRef(name=v.name, labels=v.attrs.get("Labels") or {}) for v in volumes]

    # -- networks ---------------------------------------------------------

    def inspect_network(self, name: str) -> NetworkRef | None:
        with _runtime_call(f"inspect network {name}"):
            try:
                n = self.client.networks.get(name)
            except NotFound:
                return None
        return NetworkRef(id=n.id, name=n.name, labels=n.attrs.get("Labels") or {})

    def create_network(
        self,
        name: str,
        driver: str,
        options: dict[str, str] | None = None,
        ipam: dict[str, Any] | None = None,
        internal: bool = False,
        attachable: bool = False,
        labels: dict[str, str] | None = None,
    ) -> NetworkRef:
        ipam_config = None
        if ipam:
            ipam_config = IPAMConfig(
                driver=ipam.get("driver") or "default",
                pool_configs=[IPAMPool(subnet=s) for s in ipam.get("subnets", [])],
            )
        with _runtime_call(f"create network {name}"):
            n = self.client.networks.create(
                name,
                driver=driver,
                options=options or None,
                ipam=ipam_config,
                internal=internal,
                attachable=attachable,
                labels=labels or None,
            )
        return NetworkRef(id=n.id, name=name, labels=dict(labels or {}))

    def remove_network(self, network: NetworkRef) -> None:
        with _runtime_call(f"remove network {network.name}"):
            try:
                self.client.networks.get(network.id).remove()
            except NotFound:
                return
            except APIError as e:
                if _in_use(e):
                    raise ResourceInUse("network", network.name, str(e.explanation or e)) from e
                raise

    def connect_network(self, network: str, container_id: str, aliases: list[str]) -> None:
        with _runtime_call(f"connect {container_id[:12]} to network {network}"):
            self.client.networks.get(network).connect(container_id, aliases=aliases)

    # -- volumes ----------------------------------------------------------

    def inspect_volume(self, name: str) -> VolumeRef | None:
        with _runtime_call(f"inspect volume {name}"):
            try:
                v = self.client.volumes.get(name)
            except NotFound:
                return None
        return VolumeRef(name=v.name, labels=v.attrs.get("Labels") or {})

    def create_volume(
        self,
        name: str,
        driver: str | None = None,
        driver_opts: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> VolumeRef:
        with _runtime_call(f"create volume {name}"):
            v = self.client.volumes.create(name=name, driver=driver, driver_opts=driver_opts or None, labels=labels or None)
        return VolumeRef(name=v.name, labels=v.attrs.get("Labels") or dict(labels or {}))

    def remove_volume(self, volume: VolumeRef) -> None:
        with _runtime_call(f"remove volume {volume.name}"):
            try:
                self.client.volumes.get(volume.name).remove()
            except NotFound:
                return
            except APIError as e:
                if _in_use(e):
                    raise ResourceInUse("volume", volume.name, str(e.explanation or e)) from e
                raise

    # -- images -----------------------------------------------------------

    def image_present(self, ref: str) -> bool:
        with _runtime_call(f"inspect image {ref}"):
            try:
                self.client.images.get(ref)
            except NotFound:
                return False
        return True

    def pull_image(self, ref: str) -> None:
        with _runtime_call(f"pull image {ref}"):
            self.client.images.pull(ref)

    # -- containers -------------------------------------------------------

    def create_container(self, spec: ExecutionUnitSpec) -> str:
        # containers.create cannot set endpoint aliases on the network joined
        # at creation, so this one call goes through the low-level client.
        api = self.client.api
        try:
            host_config = api.create_host_config(**spec.host_config)
        except (DockerException, TypeError, ValueError) as e:
            raise ConfigTranslationError(spec.service, "host config", str(e)) from e

        networking_config = None
        if spec.primary_network:
            networking_config = api.create_networking_config(
                {spec.primary_network: api.create_endpoint_config(aliases=list(spec.aliases))}
            )

        with _runtime_call(f"create container for service {spec.service}"):
            resp = api.create_container(
                name=spec.name,
                host_config=host_config,
                networking_config=networking_config,
                **spec.config,
            )
        for w in resp.get("Warnings") or []:
            logger.warning("Container %s: %s", spec.name, w)
        return resp["Id"]

    def start_container(self, container_id: str, service: str = "") -> None:
        try:
            self.client.containers.get(container_id).start()
        except APIError as e:
            raise ServiceStartError(service, container_id, str(e.explanation or e)) from e
        except (DockerException, requests.exceptions.ConnectionError) as e:
            raise ConnectivityError(f"Docker is not reachable (start {container_id[:12]}): {e}") from e

    def stop_container(self, container: ContainerRef, timeout: int) -> None:
        with _runtime_call(f"stop container {container.name}"):
            try:
                self.client.containers.get(container.id).stop(timeout=timeout)
            except NotFound:
                return

    def remove_container(self, container: ContainerRef) -> None:
        with _runtime_call(f"remove container {container.name}"):
            try:
                self.client.containers.get(container.id).remove()
            except NotFound:
                return
            except APIError as e:
                if _in_use(e):
                    raise ResourceInUse("container", container.name, str(e.explanation or e)) from e
                raise
