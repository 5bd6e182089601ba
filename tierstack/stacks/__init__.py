from tierstack.stacks.app_stack import AppStack
from tierstack.stacks.base import Blueprint, TopologyStack, blueprint_fingerprint
from tierstack.stacks.cdn_stack import CdnStack
from tierstack.stacks.database_stack import DatabaseStack
from tierstack.stacks.identity_stack import IdentityStack
from tierstack.stacks.network_stack import NetworkStack

__all__ = [
    "AppStack",
    "Blueprint",
    "CdnStack",
    "DatabaseStack",
    "IdentityStack",
    "NetworkStack",
    "TopologyStack",
    "blueprint_fingerprint",
]
