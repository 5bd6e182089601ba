from dataclasses import dataclass
from typing import List, Mapping, Tuple

from tierstack.config.environments import TopologyConfig
from tierstack.errors import CapacityError
from tierstack.handles import (
    COMPUTE_ROLE,
    LOAD_BALANCER_ROLE,
    AccessBoundaryHandle,
    NetworkHandle,
)
from tierstack.stacks.base import Blueprint, TopologyStack, split_list

ANY_IPV4_CIDR = "0.0.0.0/0"
PUBLIC_SERVICE_PORTS = (80, 443)

CIDR_SOURCE = "cidr"
BOUNDARY_SOURCE = "boundary"

# Output keys
VPC_ID = "VpcId"
VPC_CIDR = "VpcCidr"
AVAILABILITY_ZONES = "AvailabilityZones"
PUBLIC_SUBNET_IDS = "PublicSubnetIds"
PRIVATE_SUBNET_IDS = "PrivateSubnetIds"
COMPUTE_BOUNDARY_ID = "ComputeBoundaryId"
LOAD_BALANCER_BOUNDARY_ID = "LoadBalancerBoundaryId"


@dataclass(frozen=True)
class IngressRule:
    port: int
    source: str
    source_kind: str
    description: str
    protocol: str = "tcp"


@dataclass(frozen=True)
class BoundaryBlueprint:
    name: str
    role: str
    description: str
    ingress: Tuple[IngressRule, ...]


@dataclass(frozen=True)
class NetworkBlueprint(Blueprint):
    cidr: str
    availability_zones: Tuple[str, ...]
    subnet_cidr_mask: int
    nat_gateways: int
    flow_log_traffic: str
    load_balancer_boundary: BoundaryBlueprint
    compute_boundary: BoundaryBlueprint

    @property
    def boundaries(self) -> Tuple[BoundaryBlueprint, BoundaryBlueprint]:
        return (self.load_balancer_boundary, self.compute_boundary)


class NetworkStack(TopologyStack):
    """
    Isolated network with a public and a private tier across at least two
    availability zones, plus the two access boundaries every other tier uses.

    The load-balancer boundary admits the internet on the service ports only;
    the compute boundary admits the load-balancer boundary only.
    """

    kind = "network"
    component = "Networking"

    def __init__(self, config: TopologyConfig):
        super().__init__(config)
        self.network_config = config.profile.network
        self.compute_config = config.profile.compute

    def select_zones(self, provider) -> Tuple[str, ...]:
        available = list(provider.availability_zones(self.config.region))
        required = self.network_config.min_zones
        if len(available) < required:
            raise CapacityError(
                f"region {self.config.region} offers {len(available)} availability zone(s), "
                f"{required} required",
                stack=self.stack_name,
                field="availability_zones",
            )
        return tuple(available[: self.network_config.max_zones])

    def load_balancer_boundary(self) -> BoundaryBlueprint:
        return BoundaryBlueprint(
            name=self.props.resource_name("alb-sg"),
            role=LOAD_BALANCER_ROLE,
            description=f"Load balancer boundary for {self.props.project_name}",
            ingress=tuple(
                IngressRule(
                    port=port,
                    source=ANY_IPV4_CIDR,
                    source_kind=CIDR_SOURCE,
                    description=f"Public traffic on TCP/{port}",
                )
                for port in PUBLIC_SERVICE_PORTS
            ),
        )

    def compute_boundary(self, load_balancer: BoundaryBlueprint) -> BoundaryBlueprint:
        ports = (
            (self.compute_config.frontend_port, "Frontend from load balancer"),
            (self.compute_config.backend_port, "Backend API from load balancer"),
        )
        return BoundaryBlueprint(
            name=self.props.resource_name("app-sg"),
            role=COMPUTE_ROLE,
            description=f"Compute boundary for {self.props.project_name}",
            ingress=tuple(
                IngressRule(
                    port=port,
                    source=load_balancer.name,
                    source_kind=BOUNDARY_SOURCE,
                    description=description,
                )
                for port, description in ports
            ),
        )

    def blueprint(self, provider) -> NetworkBlueprint:
        zones = self.select_zones(provider)
        load_balancer = self.load_balancer_boundary()
        return NetworkBlueprint(
            name=self.props.resource_name("vpc"),
            tags=self.tags(),
            cidr=self.network_config.cidr,
            availability_zones=zones,
            subnet_cidr_mask=self.network_config.subnet_cidr_mask,
            nat_gateways=min(self.network_config.nat_gateways, len(zones)),
            flow_log_traffic="REJECT",
            load_balancer_boundary=load_balancer,
            compute_boundary=self.compute_boundary(load_balancer),
        )

    def access_rules(self) -> List[Tuple[str, IngressRule]]:
        """Every inbound rule the network creates, as (boundary role, rule) pairs."""
        load_balancer = self.load_balancer_boundary()
        compute = self.compute_boundary(load_balancer)
        return [(b.role, rule) for b in (load_balancer, compute) for rule in b.ingress]

    def to_handle(self, blueprint: NetworkBlueprint, outputs: Mapping[str, str]) -> NetworkHandle:
        status = self.status_of(outputs)
        return NetworkHandle(
            stack_name=self.stack_name,
            status=status,
            network_id=self.output(outputs, VPC_ID),
            cidr=outputs.get(VPC_CIDR, blueprint.cidr),
            availability_zones=split_list(self.output(outputs, AVAILABILITY_ZONES)),
            public_subnet_ids=split_list(self.output(outputs, PUBLIC_SUBNET_IDS)),
            private_subnet_ids=split_list(self.output(outputs, PRIVATE_SUBNET_IDS)),
            compute_boundary=AccessBoundaryHandle(
                stack_name=self.stack_name,
                status=status,
                boundary_id=self.output(outputs, COMPUTE_BOUNDARY_ID),
                name=blueprint.compute_boundary.name,
                role=COMPUTE_ROLE,
            ),
            load_balancer_boundary=AccessBoundaryHandle(
                stack_name=self.stack_name,
                status=status,
                boundary_id=self.output(outputs, LOAD_BALANCER_BOUNDARY_ID),
                name=blueprint.load_balancer_boundary.name,
                role=LOAD_BALANCER_ROLE,
            ),
        )
