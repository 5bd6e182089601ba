from aws_cdk import (
    aws_ec2 as ec2,
    aws_logs as logs,
    Fn,
    RemovalPolicy,
    Tags,
)
from constructs import Construct
from typing import Dict

from tierstack.components.base import publish_outputs
from tierstack.stacks.network_stack import (
    AVAILABILITY_ZONES,
    BOUNDARY_SOURCE,
    COMPUTE_BOUNDARY_ID,
    LOAD_BALANCER_BOUNDARY_ID,
    PRIVATE_SUBNET_IDS,
    PUBLIC_SUBNET_IDS,
    VPC_CIDR,
    VPC_ID,
    BoundaryBlueprint,
    NetworkBlueprint,
)


class SecureNetwork(Construct):
    """
    Two-tier VPC (public + private) with rejected-traffic flow logs and the
    load balancer / compute security groups
    """

    def __init__(self, scope: Construct, construct_id: str,
                 blueprint: NetworkBlueprint,
                 **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.vpc = ec2.Vpc(self, "VPC",
            vpc_name=blueprint.name,
            ip_addresses=ec2.IpAddresses.cidr(blueprint.cidr),
            availability_zones=list(blueprint.availability_zones),
            nat_gateways=blueprint.nat_gateways,
            enable_dns_hostnames=True,
            enable_dns_support=True,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name="Public",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=blueprint.subnet_cidr_mask
                ),
                ec2.SubnetConfiguration(
                    name="Private",
                    subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                    cidr_mask=blueprint.subnet_cidr_mask
                )
            ]
        )

        # VPC Flow Logs for security monitoring
        self.flow_log_group = logs.LogGroup(self, "VPCFlowLogGroup",
            retention=logs.RetentionDays.ONE_MONTH,
            removal_policy=RemovalPolicy.DESTROY
        )
        self.flow_logs = ec2.FlowLog(self, "VPCFlowLogs",
            resource_type=ec2.FlowLogResourceType.from_vpc(self.vpc),
            destination=ec2.FlowLogDestination.to_cloud_watch_logs(self.flow_log_group),
            traffic_type=ec2.FlowLogTrafficType[blueprint.flow_log_traffic]
        )

        # Access boundaries, load balancer first so compute rules can name it
        self.boundaries: Dict[str, ec2.SecurityGroup] = {}
        for boundary in blueprint.boundaries:
            self.boundaries[boundary.name] = self._create_boundary(boundary)
        self.load_balancer_sg = self.boundaries[blueprint.load_balancer_boundary.name]
        self.compute_sg = self.boundaries[blueprint.compute_boundary.name]

        publish_outputs(self, {
            VPC_ID: self.vpc.vpc_id,
            VPC_CIDR: self.vpc.vpc_cidr_block,
            AVAILABILITY_ZONES: ",".join(blueprint.availability_zones),
            PUBLIC_SUBNET_IDS: Fn.join(",", [s.subnet_id for s in self.vpc.public_subnets]),
            PRIVATE_SUBNET_IDS: Fn.join(",", [s.subnet_id for s in self.vpc.private_subnets]),
            COMPUTE_BOUNDARY_ID: self.compute_sg.security_group_id,
            LOAD_BALANCER_BOUNDARY_ID: self.load_balancer_sg.security_group_id,
        })

        Tags.of(self).add("Security", "High")

    def _create_boundary(self, boundary: BoundaryBlueprint) -> ec2.SecurityGroup:
        """Security group holding exactly the ingress rules of the boundary"""
        security_group = ec2.SecurityGroup(self, f"{boundary.role.title().replace('_', '')}SG",
            vpc=self.vpc,
            security_group_name=boundary.name,
            description=boundary.description,
            allow_all_outbound=True
        )
        for rule in boundary.ingress:
            if rule.source_kind == BOUNDARY_SOURCE:
                peer = self.boundaries[rule.source]
            else:
                peer = ec2.Peer.ipv4(rule.source)
            security_group.add_ingress_rule(
                peer=peer,
                connection=ec2.Port.tcp(rule.port),
                description=rule.description
            )
        return security_group
