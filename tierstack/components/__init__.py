"""
aws-cdk renderings of the stack blueprints.

Importing this package starts the jsii Node.js runtime, so only the
CloudFormation provider and the component tests import it.
"""
import tempfile
from typing import Dict, Optional

import aws_cdk as cdk
from constructs import Construct

from tierstack.components.app_compute import AppCompute
from tierstack.components.edge_distribution import EdgeDistribution
from tierstack.components.managed_database import ManagedDatabase
from tierstack.components.secure_network import SecureNetwork
from tierstack.components.user_directory import UserDirectory
from tierstack.stacks.app_stack import AppBlueprint
from tierstack.stacks.base import Blueprint
from tierstack.stacks.cdn_stack import CdnBlueprint
from tierstack.stacks.database_stack import DatabaseBlueprint
from tierstack.stacks.identity_stack import IdentityBlueprint
from tierstack.stacks.network_stack import NetworkBlueprint

RENDERERS = {
    NetworkBlueprint: ("Network", SecureNetwork),
    DatabaseBlueprint: ("Database", ManagedDatabase),
    IdentityBlueprint: ("Identity", UserDirectory),
    AppBlueprint: ("Compute", AppCompute),
    CdnBlueprint: ("Distribution", EdgeDistribution),
}


class BlueprintStack(cdk.Stack):
    """A CloudFormation stack holding the construct for one blueprint"""

    def __init__(self, scope: Construct, construct_id: str,
                 blueprint: Blueprint,
                 **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        try:
            component_id, component = RENDERERS[type(blueprint)]
        except KeyError:
            raise TypeError(f"No component renders {type(blueprint).__name__}") from None
        self.component = component(self, component_id, blueprint=blueprint)

        for key, value in blueprint.tags:
            cdk.Tags.of(self).add(key, value)


def build_stack(stack_name: str, blueprint: Blueprint, region: str, app: Optional[cdk.App] = None) -> BlueprintStack:
    app = app or cdk.App(outdir=tempfile.mkdtemp(prefix="tierstack-cdk-"))
    return BlueprintStack(app, stack_name,
        blueprint=blueprint,
        stack_name=stack_name,
        env=cdk.Environment(region=region),
        description=f"{blueprint.name} ({type(blueprint).__name__.removesuffix('Blueprint').lower()})"
    )


def synthesize_template(stack_name: str, blueprint: Blueprint, region: str) -> Dict:
    """Synthesize the CloudFormation template for one blueprint."""
    stack = build_stack(stack_name, blueprint, region)
    assembly = stack.node.root.synth()
    return assembly.get_stack_by_name(stack.stack_name).template
