"""
The five-stack dependency graph.

Edges point from the stack that owns a resource to the stack that consumes
it. Each node builds its stack from the handles of its upstream nodes,
which are passed explicitly; nothing is looked up by name at runtime.
"""
from dataclasses import dataclass
from graphlib import CycleError, TopologicalSorter
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from tierstack.config.environments import TopologyConfig
from tierstack.errors import ConfigurationError
from tierstack.handles import (
    ComputeHandle,
    DistributionHandle,
    Handle,
    IdentityHandle,
)
from tierstack.stacks import (
    AppStack,
    CdnStack,
    DatabaseStack,
    IdentityStack,
    NetworkStack,
    TopologyStack,
)

NETWORK = "network"
DATABASE = "database"
IDENTITY = "identity"
APP = "app"
CDN = "cdn"

StackFactory = Callable[[TopologyConfig, Mapping[str, Handle]], TopologyStack]


@dataclass(frozen=True)
class StackNode:
    name: str
    upstream: Tuple[str, ...]
    factory: StackFactory


def _boundary(handles: Mapping[str, Handle], attribute: str):
    network = handles.get(NETWORK)
    return getattr(network, attribute) if network is not None else None


def _network(config, handles):
    return NetworkStack(config)


def _identity(config, handles):
    return IdentityStack(config)


def _database(config, handles):
    return DatabaseStack(
        config,
        network=handles.get(NETWORK),
        compute_boundary=_boundary(handles, "compute_boundary"),
    )


def _app(config, handles):
    return AppStack(
        config,
        network=handles.get(NETWORK),
        database=handles.get(DATABASE),
        identity=handles.get(IDENTITY),
        compute_boundary=_boundary(handles, "compute_boundary"),
        load_balancer_boundary=_boundary(handles, "load_balancer_boundary"),
    )


def _cdn(config, handles):
    return CdnStack(config, compute=handles.get(APP))


DEFAULT_NODES = (
    StackNode(NETWORK, (), _network),
    StackNode(IDENTITY, (), _identity),
    StackNode(DATABASE, (NETWORK,), _database),
    StackNode(APP, (NETWORK, DATABASE, IDENTITY), _app),
    StackNode(CDN, (APP,), _cdn),
)


class Topology:
    def __init__(self, config: TopologyConfig, nodes=DEFAULT_NODES):
        self.config = config
        self.nodes: Dict[str, StackNode] = {node.name: node for node in nodes}
        for node in nodes:
            unknown = [u for u in node.upstream if u not in self.nodes]
            if unknown:
                raise ConfigurationError(
                    f"depends on unknown stack(s) {', '.join(unknown)}", stack=node.name
                )

    @property
    def edges(self) -> List[Tuple[str, str]]:
        """(upstream, downstream) pairs."""
        return [(u, node.name) for node in self.nodes.values() for u in node.upstream]

    def sorter(self) -> TopologicalSorter:
        sorter = TopologicalSorter({name: node.upstream for name, node in self.nodes.items()})
        try:
            sorter.prepare()
        except CycleError as exc:
            raise ConfigurationError(f"stack dependencies form a cycle: {exc.args[1]}") from exc
        return sorter

    def waves(self) -> List[Tuple[str, ...]]:
        """Groups of stacks whose dependencies are all in earlier groups."""
        sorter = self.sorter()
        waves = []
        while sorter.is_active():
            ready = tuple(sorted(sorter.get_ready()))
            waves.append(ready)
            sorter.done(*ready)
        return waves

    def deploy_order(self) -> List[str]:
        return [name for wave in self.waves() for name in wave]

    def teardown_order(self) -> List[str]:
        return list(reversed(self.deploy_order()))

    def stack_name(self, node: str) -> str:
        return self.config.props.resource_name(node)

    def build(self, node: str, handles: Mapping[str, Handle]) -> TopologyStack:
        stack_node = self.nodes[node]
        upstream = {name: handles[name] for name in stack_node.upstream if name in handles}
        return stack_node.factory(self.config, upstream)


def build_topology(config: TopologyConfig) -> Topology:
    return Topology(config)


def frontend_outputs(handles: Mapping[str, Handle], region: str) -> Dict[str, Optional[str]]:
    """
    The only values the web front-end reads: where to load the app, where
    to call the API and which user pool / client to authenticate against.
    """
    distribution: Optional[DistributionHandle] = handles.get(CDN)
    compute: Optional[ComputeHandle] = handles.get(APP)
    identity: Optional[IdentityHandle] = handles.get(IDENTITY)

    frontend_url = distribution.url if distribution else None
    api_base = compute.api_base_path if compute else None
    return {
        "frontend_url": frontend_url,
        "api_url": f"{frontend_url}{api_base}" if frontend_url and api_base else None,
        "load_balancer_url": compute.load_balancer_url if compute else None,
        "user_pool_id": identity.user_pool_id if identity else None,
        "client_id": identity.client_id if identity else None,
        "region": region,
    }
