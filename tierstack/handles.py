"""
Immutable references to provisioned resources.

A handle is created once by the stack that owns the resource and is passed
explicitly to the stacks that depend on it. Handles only ever hold
identifiers and secret *references*; secret values never appear here.
"""
from dataclasses import dataclass
from typing import Optional, Tuple

from tierstack.errors import DependencyUnavailableError

AVAILABLE = "available"

COMPUTE_ROLE = "compute"
LOAD_BALANCER_ROLE = "load_balancer"


@dataclass(frozen=True)
class Handle:
    stack_name: str
    status: str

    @property
    def available(self) -> bool:
        return self.status == AVAILABLE

    def require_available(self, consumer: str, field: str) -> None:
        if not self.available:
            raise DependencyUnavailableError(
                f"{type(self).__name__} from '{self.stack_name}' is '{self.status}', not available",
                stack=consumer,
                field=field,
            )


def require_handle(handle, expected_type, consumer: str, field: str):
    """Check that an upstream handle was passed, has the right type and is available."""
    if handle is None:
        raise DependencyUnavailableError("required input is missing", stack=consumer, field=field)
    if not isinstance(handle, expected_type):
        raise DependencyUnavailableError(
            f"expected {expected_type.__name__}, got {type(handle).__name__}",
            stack=consumer,
            field=field,
        )
    handle.require_available(consumer, field)
    return handle


def require_value(value, consumer: str, field: str):
    if value is None or value == "" or value == ():
        raise DependencyUnavailableError("upstream output is empty", stack=consumer, field=field)
    return value


@dataclass(frozen=True)
class AccessBoundaryHandle(Handle):
    boundary_id: str
    name: str
    role: str


@dataclass(frozen=True)
class NetworkHandle(Handle):
    network_id: str
    cidr: str
    availability_zones: Tuple[str, ...]
    public_subnet_ids: Tuple[str, ...]
    private_subnet_ids: Tuple[str, ...]
    compute_boundary: AccessBoundaryHandle
    load_balancer_boundary: AccessBoundaryHandle


@dataclass(frozen=True)
class CredentialHandle:
    secret_ref: str

    def __repr__(self) -> str:
        return f"CredentialHandle(secret_ref={self.secret_ref!r})"


@dataclass(frozen=True)
class DatabaseHandle(Handle):
    instance_id: str
    endpoint: str
    port: int
    database_name: str
    engine: str
    engine_version: str
    multi_az: bool
    instance_count: int
    credential: CredentialHandle
    boundary_id: str

    @property
    def replicated(self) -> bool:
        return self.multi_az and self.instance_count > 1


@dataclass(frozen=True)
class IdentityHandle(Handle):
    user_pool_id: str
    client_id: str
    domain: str
    client_secret: Optional[CredentialHandle] = None


@dataclass(frozen=True)
class ComputeHandle(Handle):
    instance_ids: Tuple[str, ...]
    load_balancer_endpoint: str
    api_base_path: str = "/api"

    @property
    def load_balancer_url(self) -> str:
        return f"http://{self.load_balancer_endpoint}"


@dataclass(frozen=True)
class DistributionHandle(Handle):
    distribution_id: str
    domain_name: str

    @property
    def url(self) -> str:
        return f"https://{self.domain_name}"
