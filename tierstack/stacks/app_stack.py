from dataclasses import dataclass
from typing import Dict, Mapping, Tuple

from tierstack.config.environments import TopologyConfig
from tierstack.errors import ConfigurationError, DependencyUnavailableError
from tierstack.handles import (
    COMPUTE_ROLE,
    LOAD_BALANCER_ROLE,
    AccessBoundaryHandle,
    ComputeHandle,
    DatabaseHandle,
    IdentityHandle,
    NetworkHandle,
    require_handle,
    require_value,
)
from tierstack.stacks.base import Blueprint, TopologyStack, split_list

API_BASE_PATH = "/api"
LISTENER_PORT = 80
HEALTH_CHECK_PATH = "/health"

# Keys that may only ever carry a reference, never a literal secret
_SECRET_MARKERS = ("PASSWORD", "SECRET", "TOKEN", "PRIVATE_KEY")
_REFERENCE_SUFFIXES = ("_ARN", "_REF")

# Output keys
INSTANCE_IDS = "InstanceIds"
LOAD_BALANCER_DNS = "LoadBalancerDnsName"


@dataclass(frozen=True)
class HealthCheck:
    path: str = HEALTH_CHECK_PATH
    healthy_http_codes: str = "200"
    interval_seconds: int = 30
    timeout_seconds: int = 5
    healthy_threshold: int = 2
    unhealthy_threshold: int = 3


@dataclass(frozen=True)
class TargetGroupBlueprint:
    name: str
    port: int
    health_check: HealthCheck


@dataclass(frozen=True)
class AppBlueprint(Blueprint):
    instance_name: str
    instance_type: str
    instance_count: int
    volume_size_gb: int
    network_id: str
    availability_zones: Tuple[str, ...]
    public_subnet_ids: Tuple[str, ...]
    private_subnet_ids: Tuple[str, ...]
    compute_boundary_id: str
    load_balancer_boundary_id: str
    load_balancer_name: str
    listener_port: int
    frontend: TargetGroupBlueprint
    backend: TargetGroupBlueprint
    api_path_pattern: str
    runtime_environment: Tuple[Tuple[str, str], ...]
    readable_secret_refs: Tuple[str, ...]


def check_runtime_environment(environment: Mapping[str, str], stack: str) -> None:
    """Refuse runtime settings that would carry a secret value instead of a reference."""
    for key in environment:
        upper = key.upper()
        if any(marker in upper for marker in _SECRET_MARKERS) and not upper.endswith(
            _REFERENCE_SUFFIXES
        ):
            raise ConfigurationError(
                "secret material may only be injected as a reference",
                stack=stack,
                field=f"runtime_environment.{key}",
            )


class AppStack(TopologyStack):
    """
    Compute instances behind an internet-facing load balancer.

    This is where the network, database and identity contracts meet, so
    every upstream handle is checked before anything is described: a
    missing identity client would mean an unauthenticated service.
    """

    kind = "app"
    component = "Compute"

    def __init__(
        self,
        config: TopologyConfig,
        network: NetworkHandle,
        database: DatabaseHandle,
        identity: IdentityHandle,
        compute_boundary: AccessBoundaryHandle,
        load_balancer_boundary: AccessBoundaryHandle,
    ):
        super().__init__(config)
        name = self.stack_name
        self.network = require_handle(network, NetworkHandle, name, "network")
        self.database = require_handle(database, DatabaseHandle, name, "database")
        self.identity = require_handle(identity, IdentityHandle, name, "identity")
        self.compute_boundary = self._check_boundary(
            compute_boundary, COMPUTE_ROLE, network.compute_boundary, "compute_boundary"
        )
        self.load_balancer_boundary = self._check_boundary(
            load_balancer_boundary,
            LOAD_BALANCER_ROLE,
            network.load_balancer_boundary,
            "load_balancer_boundary",
        )

        require_value(network.public_subnet_ids, name, "network.public_subnet_ids")
        require_value(network.private_subnet_ids, name, "network.private_subnet_ids")
        require_value(database.endpoint, name, "database.endpoint")
        if database.credential is None:
            raise DependencyUnavailableError("required input is missing", stack=name, field="database.credential")
        require_value(database.credential.secret_ref, name, "database.credential")
        require_value(identity.user_pool_id, name, "identity.user_pool_id")
        require_value(identity.client_id, name, "identity.client_id")

        self.compute_config = config.profile.compute
        check_runtime_environment(self.runtime_environment(), name)

    def _check_boundary(self, boundary, role, owned_by_network, field) -> AccessBoundaryHandle:
        require_handle(boundary, AccessBoundaryHandle, self.stack_name, field)
        if boundary.role != role:
            raise DependencyUnavailableError(
                f"boundary '{boundary.name}' has role '{boundary.role}', expected '{role}'",
                stack=self.stack_name,
                field=field,
            )
        if boundary != owned_by_network:
            raise DependencyUnavailableError(
                "boundary does not belong to the given network", stack=self.stack_name, field=field
            )
        return boundary

    def runtime_environment(self) -> Dict[str, str]:
        """Configuration injected into the compute runtime. References only."""
        environment = {
            "APP_ENVIRONMENT": self.props.environment,
            "AWS_REGION": self.config.region,
            "DATABASE_HOST": self.database.endpoint,
            "DATABASE_PORT": str(self.database.port),
            "DATABASE_NAME": self.database.database_name,
            "DATABASE_SECRET_ARN": self.database.credential.secret_ref,
            "COGNITO_USER_POOL_ID": self.identity.user_pool_id,
            "COGNITO_CLIENT_ID": self.identity.client_id,
            "COGNITO_DOMAIN": self.identity.domain,
            "API_BASE_PATH": API_BASE_PATH,
        }
        if self.identity.client_secret is not None:
            environment["COGNITO_CLIENT_SECRET_ARN"] = self.identity.client_secret.secret_ref
        return environment

    def blueprint(self, provider) -> AppBlueprint:
        compute = self.compute_config
        secret_refs = [self.database.credential.secret_ref]
        if self.identity.client_secret is not None:
            secret_refs.append(self.identity.client_secret.secret_ref)
        return AppBlueprint(
            name=self.props.resource_name("app"),
            tags=self.tags(),
            instance_name=self.props.resource_name("app"),
            instance_type=compute.instance_type,
            instance_count=compute.instance_count,
            volume_size_gb=compute.volume_size_gb,
            network_id=self.network.network_id,
            availability_zones=self.network.availability_zones,
            public_subnet_ids=self.network.public_subnet_ids,
            private_subnet_ids=self.network.private_subnet_ids,
            compute_boundary_id=self.compute_boundary.boundary_id,
            load_balancer_boundary_id=self.load_balancer_boundary.boundary_id,
            load_balancer_name=self.props.resource_name("alb"),
            listener_port=LISTENER_PORT,
            frontend=TargetGroupBlueprint(
                name=self.props.resource_name("frontend-tg"),
                port=compute.frontend_port,
                health_check=HealthCheck(),
            ),
            backend=TargetGroupBlueprint(
                name=self.props.resource_name("backend-tg"),
                port=compute.backend_port,
                health_check=HealthCheck(),
            ),
            api_path_pattern=f"{API_BASE_PATH}/*",
            runtime_environment=tuple(sorted(self.runtime_environment().items())),
            readable_secret_refs=tuple(secret_refs),
        )

    def to_handle(self, blueprint: AppBlueprint, outputs: Mapping[str, str]) -> ComputeHandle:
        return ComputeHandle(
            stack_name=self.stack_name,
            status=self.status_of(outputs),
            instance_ids=split_list(self.output(outputs, INSTANCE_IDS)),
            load_balancer_endpoint=self.output(outputs, LOAD_BALANCER_DNS),
            api_base_path=API_BASE_PATH,
        )
