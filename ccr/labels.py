"""Identity labels and configuration fingerprints.

Every resource the reconciler creates is tagged with the project it belongs
to, its kind and its logical name, so a later run can rediscover it by
querying the runtime. Containers also carry a fingerprint of the service
record they were created from; a changed fingerprint is the only drift
signal.
"""
from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from typing import Any

from .models import Service

LABEL_NAMESPACE = "io.compose-spec"
LABEL_PROJECT = LABEL_NAMESPACE + ".project"
LABEL_KIND = LABEL_NAMESPACE + ".kind"
LABEL_SERVICE = LABEL_NAMESPACE + ".service"
LABEL_NETWORK = LABEL_NAMESPACE + ".network"
LABEL_VOLUME = LABEL_NAMESPACE + ".volume"
LABEL_CONFIG_HASH = LABEL_NAMESPACE + ".config-hash"

KIND_CONTAINER = "container"
KIND_NETWORK = "network"
KIND_VOLUME = "volume"

NAME_LABELS = {
    KIND_CONTAINER: LABEL_SERVICE,
    KIND_NETWORK: LABEL_NETWORK,
    KIND_VOLUME: LABEL_VOLUME,
}


def identity_labels(project: str, kind: str, name: str) -> dict[str, str]:
    try:
        name_label = NAME_LABELS[kind]
    except KeyError:
        raise ValueError(f"Unknown resource kind {kind!r}.") from None
    return {
        LABEL_PROJECT: project,
        LABEL_KIND: kind,
        name_label: name,
    }


def label_filters(project: str, kind: str | None = None) -> list[str]:
    """Server-side `label=` filter values selecting a project's resources."""
    filters = [f"{LABEL_PROJECT}={project}"]
    if kind:
        filters.append(f"{LABEL_KIND}={kind}")
    return filters


def logical_name(kind: str, labels: dict[str, str] | None) -> str:
    return (labels or {}).get(NAME_LABELS[kind], "")


def canonical_form(service: Service) -> str:
    """Deterministic JSON rendering of the full service record."""
    record: dict[str, Any] = asdict(service)
    # Membership order picks the primary network, so it must survive key sorting.
    record["networks"] = [[key, net] for key, net in record["networks"].items()]
    return json.dumps(record, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def fingerprint(service: Service) -> str:
    return hashlib.sha256(canonical_form(service).encode("utf-8")).hexdigest()


def trimmed_project(project: str) -> str:
    return project.strip("-_")


def volume_identity(project: str, name: str) -> str:
    return f"{trimmed_project(project)}_{name}"


def container_identity(project: str, service: Service) -> str:
    if service.container_name:
        return service.container_name
    return f"{trimmed_project(project)}_{service.name}"


def default_network_name(project: str) -> str:
    return f"{project}-default"


def short_id(resource_id: str) -> str:
    return resource_id[:12]
