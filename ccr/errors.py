from __future__ import annotations


class CcrError(Exception):
    """Base class for every error the reconciler reports to the operator."""


class DescriptorError(CcrError):
    """The compose file is missing or does not match the expected schema."""


class ConnectivityError(CcrError):
    """The container runtime could not be reached."""


class ExternalResourceNotFound(CcrError):
    def __init__(self, kind: str, name: str):
        self.kind = kind
        self.name = name
        hint = f"docker {kind} create {name}" if kind == "network" else f"docker volume create --name={name}"
        super().__init__(
            f"{kind.capitalize()} {name} declared as external, but could not be found. "
            f"Please create the {kind} manually using `{hint}` and try again."
        )


class ConfigTranslationError(CcrError):
    def __init__(self, service: str, field: str, detail: str):
        self.service = service
        self.field = field
        super().__init__(f"service {service!r}: cannot translate {field}: {detail}")


class ResourceInUse(CcrError):
    def __init__(self, kind: str, name: str, detail: str = ""):
        self.kind = kind
        self.name = name
        msg = f"{kind} {name} is still in use"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)


class RuntimeRequestError(CcrError):
    """The runtime rejected a request for a reason other than absence or conflict."""


class ServiceStartError(RuntimeRequestError):
    def __init__(self, service: str, container_id: str, detail: str):
        self.service = service
        self.container_id = container_id
        super().__init__(f"container {container_id[:12]} for service {service!r} failed to start: {detail}")
