from typing import Mapping, Sequence

from aws_cdk import CfnOutput, Stack, aws_ec2 as ec2
from constructs import Construct


def import_network(
    scope: Construct,
    construct_id: str,
    network_id: str,
    availability_zones: Sequence[str],
    public_subnet_ids: Sequence[str] = (),
    private_subnet_ids: Sequence[str] = (),
) -> ec2.IVpc:
    """Reference a network created by another stack from its concrete identifiers."""
    return ec2.Vpc.from_vpc_attributes(
        scope,
        construct_id,
        vpc_id=network_id,
        availability_zones=list(availability_zones),
        public_subnet_ids=list(public_subnet_ids) or None,
        private_subnet_ids=list(private_subnet_ids) or None,
    )


def import_boundary(scope: Construct, construct_id: str, boundary_id: str) -> ec2.ISecurityGroup:
    # Immutable: rules on a boundary belong to the stack that owns it
    return ec2.SecurityGroup.from_security_group_id(
        scope, construct_id, boundary_id, mutable=False
    )


def publish_outputs(scope: Construct, outputs: Mapping[str, str]) -> None:
    """Stack outputs keyed exactly as the owning stack expects to read them back."""
    stack = Stack.of(scope)
    for key, value in outputs.items():
        CfnOutput(stack, key, value=value)
