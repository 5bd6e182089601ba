from dataclasses import dataclass
from typing import Mapping, Tuple

from tierstack.config.environments import TopologyConfig, database_sizing
from tierstack.errors import DependencyUnavailableError
from tierstack.handles import (
    COMPUTE_ROLE,
    AccessBoundaryHandle,
    CredentialHandle,
    DatabaseHandle,
    NetworkHandle,
    require_handle,
    require_value,
)
from tierstack.stacks.base import Blueprint, TopologyStack

# Output keys
INSTANCE_ID = "DatabaseInstanceId"
ENDPOINT = "DatabaseEndpoint"
PORT = "DatabasePort"
SECRET_ARN = "DatabaseSecretArn"
BOUNDARY_ID = "DatabaseBoundaryId"


@dataclass(frozen=True)
class DatabaseBlueprint(Blueprint):
    instance_identifier: str
    engine: str
    engine_version: str
    instance_class: str
    allocated_storage_gb: int
    multi_az: bool
    backup_retention_days: int
    deletion_protection: bool
    performance_insights: bool
    port: int
    database_name: str
    username: str
    secret_name: str
    network_id: str
    availability_zones: Tuple[str, ...]
    private_subnet_ids: Tuple[str, ...]
    compute_boundary_id: str
    boundary_name: str
    storage_encrypted: bool = True
    publicly_accessible: bool = False


class DatabaseStack(TopologyStack):
    """
    Managed relational database in the private tier. Only instances inside
    the compute boundary can reach it, and its credential lives in the
    secret store; the stack only ever hands out the secret reference.
    """

    kind = "database"

    def __init__(
        self,
        config: TopologyConfig,
        network: NetworkHandle,
        compute_boundary: AccessBoundaryHandle,
    ):
        super().__init__(config)
        self.network = require_handle(network, NetworkHandle, self.stack_name, "network")
        self.compute_boundary = require_handle(
            compute_boundary, AccessBoundaryHandle, self.stack_name, "compute_boundary"
        )
        if compute_boundary.role != COMPUTE_ROLE:
            raise DependencyUnavailableError(
                f"boundary '{compute_boundary.name}' has role '{compute_boundary.role}', "
                f"expected '{COMPUTE_ROLE}'",
                stack=self.stack_name,
                field="compute_boundary",
            )
        if compute_boundary != network.compute_boundary:
            raise DependencyUnavailableError(
                "compute boundary does not belong to the given network",
                stack=self.stack_name,
                field="compute_boundary",
            )
        require_value(network.private_subnet_ids, self.stack_name, "network.private_subnet_ids")
        self.sizing = database_sizing(self.props.environment)

    def blueprint(self, provider) -> DatabaseBlueprint:
        sizing = self.sizing
        return DatabaseBlueprint(
            name=self.props.resource_name("db"),
            tags=self.tags(),
            instance_identifier=self.props.resource_name("db"),
            engine=sizing.engine,
            engine_version=sizing.engine_version,
            instance_class=sizing.instance_class,
            allocated_storage_gb=sizing.allocated_storage_gb,
            multi_az=sizing.multi_az,
            backup_retention_days=sizing.backup_retention_days,
            deletion_protection=sizing.deletion_protection,
            performance_insights=sizing.performance_insights,
            port=sizing.port,
            database_name=sizing.database_name,
            username=sizing.username,
            secret_name=self.props.resource_name("db-secret"),
            network_id=self.network.network_id,
            availability_zones=self.network.availability_zones,
            private_subnet_ids=self.network.private_subnet_ids,
            compute_boundary_id=self.compute_boundary.boundary_id,
            boundary_name=self.props.resource_name("db-sg"),
        )

    def to_handle(self, blueprint: DatabaseBlueprint, outputs: Mapping[str, str]) -> DatabaseHandle:
        return DatabaseHandle(
            stack_name=self.stack_name,
            status=self.status_of(outputs),
            instance_id=self.output(outputs, INSTANCE_ID),
            endpoint=self.output(outputs, ENDPOINT),
            port=int(outputs.get(PORT) or blueprint.port),
            database_name=blueprint.database_name,
            engine=blueprint.engine,
            engine_version=blueprint.engine_version,
            multi_az=blueprint.multi_az,
            instance_count=2 if blueprint.multi_az else 1,
            credential=CredentialHandle(secret_ref=self.output(outputs, SECRET_ARN)),
            boundary_id=self.output(outputs, BOUNDARY_ID),
        )
