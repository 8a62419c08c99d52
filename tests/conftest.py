import hashlib
import os as _os
import sys

import pytest

# Ensure project root is importable (so `import ccr` works without installing the package)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from ccr.docker_ops import ContainerRef, NetworkRef, VolumeRef  # noqa: E402
from ccr.errors import ConnectivityError, ResourceInUse, RuntimeRequestError, ServiceStartError  # noqa: E402
from ccr.labels import (  # noqa: E402
    KIND_CONTAINER,
    KIND_NETWORK,
    KIND_VOLUME,
    LABEL_CONFIG_HASH,
    identity_labels,
)
from ccr.models import Project, Service  # noqa: E402
from ccr.progress import Progress  # noqa: E402

MUTATING_CALLS = {
    "create_network",
    "remove_network",
    "create_volume",
    "remove_volume",
    "create_container",
    "remove_container",
}


def _matches(labels, filters):
    for f in filters:
        key, _, value = f.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeRuntime:
    """In-memory stand-in for DockerRuntime with the same call surface."""

    def __init__(self):
        self.containers = {}  # id -> dict(name, labels, state, spec, networks)
        self.networks = {}  # id -> dict(name, labels, request)
        self.volumes = {}  # name -> dict(labels, request)
        self.missing_images = set()
        self.fail_start = set()
        self.fail_connect = set()
        self.unreachable = False
        self.calls = []
        self._seq = 0

    # -- helpers for tests ------------------------------------------------

    def _new_id(self, name):
        self._seq += 1
        return hashlib.sha256(f"{name}-{self._seq}".encode()).hexdigest()

    def mutations(self):
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    def reset_calls(self):
        self.calls = []

    def add_container(self, project, service, fingerprint="stale", name=None, networks=()):
        labels = identity_labels(project, KIND_CONTAINER, service)
        labels[LABEL_CONFIG_HASH] = fingerprint
        cid = self._new_id(service)
        self.containers[cid] = {
            "name": name or f"{project}_{service}_{self._seq}",
            "labels": labels,
            "state": "running",
            "spec": None,
            "networks": {n: [service] for n in networks},
        }
        return cid

    def add_network(self, name, labels=None):
        nid = self._new_id(name)
        self.networks[nid] = {"name": name, "labels": dict(labels or {}), "request": {}}
        return nid

    def add_volume(self, name, labels=None):
        self.volumes[name] = {"labels": dict(labels or {}), "request": {}}

    def container_by_name(self, name):
        for cid, c in self.containers.items():
            if c["name"] == name:
                return cid, c
        return None, None

    def network_by_name(self, name):
        for nid, n in self.networks.items():
            if n["name"] == name or nid == name:
                return nid, n
        return None, None

    def _check(self):
        if self.unreachable:
            raise ConnectivityError("Docker is not reachable (fake)")

    # -- inventory --------------------------------------------------------

    def list_containers(self, label_filters):
        self._check()
        return [
            ContainerRef(
                id=cid,
                name=c["name"],
                labels=dict(c["labels"]),
                state=c["state"],
                networks=tuple(c["networks"]),
            )
            for cid, c in self.containers.items()
            if _matches(c["labels"], label_filters)
        ]

    def list_networks(self, label_filters):
        self._check()
        return [
            NetworkRef(id=nid, name=n["name"], labels=dict(n["labels"]))
            for nid, n in self.networks.items()
            if _matches(n["labels"], label_filters)
        ]

    def list_volumes(self, label_filters):
        self._check()
        return [
            VolumeRef(name=name, labels=dict(v["labels"]))
            for name, v in self.volumes.items()
            if _matches(v["labels"], label_filters)
        ]

    # -- networks ---------------------------------------------------------

    def inspect_network(self, name):
        self._check()
        nid, n = self.network_by_name(name)
        if n is None:
            return None
        return NetworkRef(id=nid, name=n["name"], labels=dict(n["labels"]))

    def create_network(self, name, driver, options=None, ipam=None, internal=False, attachable=False, labels=None):
        self._check()
        self.calls.append(("create_network", name))
        if self.network_by_name(name)[1] is not None:
            raise RuntimeRequestError(f"network with name {name} already exists")
        nid = self._new_id(name)
        request = dict(driver=driver, options=options, ipam=ipam, internal=internal, attachable=attachable)
        self.networks[nid] = {"name": name, "labels": dict(labels or {}), "request": request}
        return NetworkRef(id=nid, name=name, labels=dict(labels or {}))

    def remove_network(self, network):
        self._check()
        self.calls.append(("remove_network", network.name))
        if network.id not in self.networks:
            return
        for c in self.containers.values():
            if network.name in c["networks"]:
                raise ResourceInUse("network", network.name, "has active endpoints")
        del self.networks[network.id]

    def connect_network(self, network, container_id, aliases):
        self._check()
        self.calls.append(("connect_network", network, container_id))
        if network in self.fail_connect:
            raise RuntimeRequestError(f"connect to network {network} failed")
        if self.network_by_name(network)[1] is None:
            raise RuntimeRequestError(f"network {network} not found")
        self.containers[container_id]["networks"][network] = list(aliases)

    # -- volumes ----------------------------------------------------------

    def inspect_volume(self, name):
        self._check()
        v = self.volumes.get(name)
        if v is None:
            return None
        return VolumeRef(name=name, labels=dict(v["labels"]))

    def create_volume(self, name, driver=None, driver_opts=None, labels=None):
        self._check()
        self.calls.append(("create_volume", name))
        self.volumes[name] = {"labels": dict(labels or {}), "request": dict(driver=driver, driver_opts=driver_opts)}
        return VolumeRef(name=name, labels=dict(labels or {}))

    def remove_volume(self, volume):
        self._check()
        self.calls.append(("remove_volume", volume.name))
        for c in self.containers.values():
            spec = c["spec"]
            if spec and any(m.get("Source") == volume.name for m in spec.host_config.get("mounts", [])):
                raise ResourceInUse("volume", volume.name, "volume is in use")
        self.volumes.pop(volume.name, None)

    # -- images -----------------------------------------------------------

    def image_present(self, ref):
        self._check()
        return ref not in self.missing_images

    def pull_image(self, ref):
        self._check()
        self.calls.append(("pull_image", ref))
        self.missing_images.discard(ref)

    # -- containers -------------------------------------------------------

    def create_container(self, spec):
        self._check()
        self.calls.append(("create_container", spec.name))
        if self.container_by_name(spec.name)[1] is not None:
            raise RuntimeRequestError(f"container name {spec.name} is already in use")
        cid = self._new_id(spec.name)
        networks = {spec.primary_network: list(spec.aliases)} if spec.primary_network else {}
        self.containers[cid] = {
            "name": spec.name,
            "labels": dict(spec.config.get("labels", {})),
            "state": "created",
            "spec": spec,
            "networks": networks,
        }
        return cid

    def start_container(self, container_id, service=""):
        self._check()
        self.calls.append(("start_container", container_id))
        if service in self.fail_start:
            raise ServiceStartError(service, container_id, "port is already allocated")
        self.containers[container_id]["state"] = "running"

    def stop_container(self, container, timeout):
        self._check()
        self.calls.append(("stop_container", container.name))
        if container.id in self.containers:
            self.containers[container.id]["state"] = "exited"

    def remove_container(self, container):
        self._check()
        self.calls.append(("remove_container", container.name))
        self.containers.pop(container.id, None)


@pytest.fixture
def runtime():
    return FakeRuntime()


@pytest.fixture
def progress():
    return Progress(enabled=False)


@pytest.fixture
def project():
    """Two services and no explicit networks."""
    return Project(
        name="myproj",
        working_dir="/srv/myproj",
        services=(
            Service(name="web", image="app:1"),
            Service(name="db", image="postgres:14"),
        ),
    )


@pytest.fixture
def network_labels():
    def _labels(project, name):
        return identity_labels(project, KIND_NETWORK, name)

    return _labels


@pytest.fixture
def volume_labels():
    def _labels(project, name):
        return identity_labels(project, KIND_VOLUME, name)

    return _labels
