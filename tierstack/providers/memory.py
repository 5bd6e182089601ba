"""
In-process provider.

Deterministic identifiers, quota and engine-version checks and atomic
create-or-update semantics, without talking to a cloud. Used for dry runs
(``--provider memory``) and throughout the test suite.
"""
import dataclasses
import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from tierstack.config.environments import PathPolicy
from tierstack.edge import EdgeRouter
from tierstack.errors import (
    CapacityError,
    ConfigurationError,
    DependencyUnavailableError,
    TopologyError,
)
from tierstack.handles import AVAILABLE
from tierstack.providers.base import Provider
from tierstack.stacks.app_stack import INSTANCE_IDS, LOAD_BALANCER_DNS, AppBlueprint
from tierstack.stacks.base import STATUS_OUTPUT, Blueprint
from tierstack.stacks.cdn_stack import DISTRIBUTION_DOMAIN, DISTRIBUTION_ID, CdnBlueprint
from tierstack.stacks.database_stack import (
    BOUNDARY_ID,
    ENDPOINT,
    INSTANCE_ID,
    PORT,
    SECRET_ARN,
    DatabaseBlueprint,
)
from tierstack.stacks.identity_stack import (
    CLIENT_ID,
    CLIENT_SECRET_ARN,
    DOMAIN,
    USER_POOL_ID,
    IdentityBlueprint,
)
from tierstack.stacks.network_stack import (
    AVAILABILITY_ZONES,
    COMPUTE_BOUNDARY_ID,
    LOAD_BALANCER_BOUNDARY_ID,
    PRIVATE_SUBNET_IDS,
    PUBLIC_SUBNET_IDS,
    VPC_CIDR,
    VPC_ID,
    NetworkBlueprint,
)

logger = logging.getLogger(__name__)

DEFAULT_ENGINE_VERSIONS = {"postgres": ("14.10", "15.4", "16.1"), "mysql": ("8.0.35",)}


@dataclass
class _Deployment:
    blueprint: Blueprint
    outputs: Dict[str, str]
    status: str = AVAILABLE


@dataclass
class _InjectedFailure:
    error: TopologyError
    remaining: int


def _digest(*parts: str, length: int = 12) -> str:
    return hashlib.sha1("/".join(parts).encode()).hexdigest()[:length]


def _flatten(value) -> List[str]:
    if dataclasses.is_dataclass(value):
        value = dataclasses.asdict(value)
    if isinstance(value, dict):
        return [item for v in value.values() for item in _flatten(v)]
    if isinstance(value, (list, tuple)):
        return [item for v in value for item in _flatten(v)]
    return [str(value)]


class InMemoryProvider(Provider):
    name = "memory"

    def __init__(
        self,
        region: str = "us-east-1",
        account: str = "123456789012",
        zones: Optional[Sequence[str]] = None,
        engine_versions: Optional[Mapping[str, Sequence[str]]] = None,
        max_database_instances: int = 5,
        max_compute_instances: int = 10,
    ):
        self.region = region
        self.account = account
        self.zones = tuple(zones) if zones is not None else tuple(f"{region}{s}" for s in "abc")
        self.engine_versions = dict(engine_versions or DEFAULT_ENGINE_VERSIONS)
        self.max_database_instances = max_database_instances
        self.max_compute_instances = max_compute_instances
        self.deploy_calls: List[str] = []
        self.destroy_calls: List[str] = []
        self._stacks: Dict[str, _Deployment] = {}
        self._failures: Dict[str, _InjectedFailure] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Provider API
    # ------------------------------------------------------------------

    def availability_zones(self, region: str) -> Sequence[str]:
        return self.zones if region == self.region else ()

    def deploy(self, stack_name: str, blueprint: Blueprint) -> Mapping[str, str]:
        with self._lock:
            self.deploy_calls.append(stack_name)
            self._raise_injected(stack_name)
            planner = self._planners().get(type(blueprint))
            if planner is None:
                raise ConfigurationError(
                    f"no resources known for {type(blueprint).__name__}", stack=stack_name
                )
            # Everything is validated before anything is recorded, so a failure
            # leaves the previous deployment (or nothing) in place.
            outputs = planner(stack_name, blueprint)
            outputs[STATUS_OUTPUT] = AVAILABLE
            self._stacks[stack_name] = _Deployment(blueprint=blueprint, outputs=outputs)
            logger.debug("Stack committed", extra={"stack": stack_name, "provider": self.name})
            return dict(outputs)

    def destroy(self, stack_name: str) -> None:
        with self._lock:
            self.destroy_calls.append(stack_name)
            self._raise_injected(stack_name)
            deployment = self._stacks.get(stack_name)
            if deployment is None:
                return
            dependents = self.referencing_stacks(stack_name)
            if dependents:
                raise DependencyUnavailableError(
                    f"still referenced by {', '.join(sorted(dependents))}", stack=stack_name
                )
            del self._stacks[stack_name]

    def status(self, stack_name: str) -> Optional[str]:
        deployment = self._stacks.get(stack_name)
        return deployment.status if deployment else None

    # ------------------------------------------------------------------
    # Inspection and fault injection
    # ------------------------------------------------------------------

    def stacks(self) -> List[str]:
        return sorted(self._stacks)

    def blueprint_of(self, stack_name: str) -> Optional[Blueprint]:
        deployment = self._stacks.get(stack_name)
        return deployment.blueprint if deployment else None

    def outputs_of(self, stack_name: str) -> Dict[str, str]:
        return dict(self._stacks[stack_name].outputs)

    def set_status(self, stack_name: str, status: str) -> None:
        self._stacks[stack_name].status = status
        self._stacks[stack_name].outputs[STATUS_OUTPUT] = status

    def fail_next(self, stack_name: str, error: TopologyError, times: int = 1) -> None:
        self._failures[stack_name] = _InjectedFailure(error=error, remaining=times)

    def referencing_stacks(self, stack_name: str) -> List[str]:
        produced = {
            item
            for key, value in self._stacks[stack_name].outputs.items()
            if key != STATUS_OUTPUT
            for item in value.split(",")
            if item
        }
        return [
            name
            for name, deployment in self._stacks.items()
            if name != stack_name and produced.intersection(_flatten(deployment.blueprint))
        ]

    def edge_router(self, stack_name: str, origin: Callable[[str], str], cache=None) -> EdgeRouter:
        blueprint = self.blueprint_of(stack_name)
        if not isinstance(blueprint, CdnBlueprint):
            raise DependencyUnavailableError("no distribution deployed", stack=stack_name)
        policy = PathPolicy(
            behaviors=(*blueprint.additional_behaviors, blueprint.default_behavior),
            version=blueprint.policy_version,
        )
        return EdgeRouter(policy, origin, cache=cache)

    def _raise_injected(self, stack_name: str) -> None:
        failure = self._failures.get(stack_name)
        if failure and failure.remaining > 0:
            failure.remaining -= 1
            raise failure.error

    # ------------------------------------------------------------------
    # Planners: validate a blueprint and compute its outputs
    # ------------------------------------------------------------------

    def _planners(self) -> Dict[type, Callable[[str, Blueprint], Dict[str, str]]]:
        return {
            NetworkBlueprint: self._plan_network,
            DatabaseBlueprint: self._plan_database,
            IdentityBlueprint: self._plan_identity,
            AppBlueprint: self._plan_app,
            CdnBlueprint: self._plan_cdn,
        }

    def _require_network(self, stack_name: str, network_id: str) -> NetworkBlueprint:
        for name, deployment in self._stacks.items():
            if deployment.outputs.get(VPC_ID) == network_id:
                if deployment.status != AVAILABLE:
                    raise DependencyUnavailableError(
                        f"network {network_id} is '{deployment.status}'", stack=stack_name, field="network"
                    )
                return deployment.blueprint
        raise DependencyUnavailableError(f"network {network_id} does not exist", stack=stack_name, field="network")

    def _instances_elsewhere(self, stack_name: str, blueprint_type: type) -> int:
        total = 0
        for name, deployment in self._stacks.items():
            if name == stack_name or not isinstance(deployment.blueprint, blueprint_type):
                continue
            if blueprint_type is DatabaseBlueprint:
                total += 2 if deployment.blueprint.multi_az else 1
            else:
                total += deployment.blueprint.instance_count
        return total

    def _plan_network(self, stack_name: str, blueprint: NetworkBlueprint) -> Dict[str, str]:
        missing = [z for z in blueprint.availability_zones if z not in self.zones]
        if missing:
            raise CapacityError(
                f"zones not offered in {self.region}: {', '.join(missing)}",
                field="availability_zones",
            )
        public = [f"subnet-{_digest(stack_name, 'public', z, length=8)}" for z in blueprint.availability_zones]
        private = [f"subnet-{_digest(stack_name, 'private', z, length=8)}" for z in blueprint.availability_zones]
        return {
            VPC_ID: f"vpc-{_digest(stack_name, blueprint.cidr)}",
            VPC_CIDR: blueprint.cidr,
            AVAILABILITY_ZONES: ",".join(blueprint.availability_zones),
            PUBLIC_SUBNET_IDS: ",".join(public),
            PRIVATE_SUBNET_IDS: ",".join(private),
            COMPUTE_BOUNDARY_ID: f"sg-{_digest(stack_name, blueprint.compute_boundary.name)}",
            LOAD_BALANCER_BOUNDARY_ID: f"sg-{_digest(stack_name, blueprint.load_balancer_boundary.name)}",
        }

    def _plan_database(self, stack_name: str, blueprint: DatabaseBlueprint) -> Dict[str, str]:
        supported = self.engine_versions.get(blueprint.engine, ())
        if blueprint.engine_version not in supported:
            raise ConfigurationError(
                f"{blueprint.engine} {blueprint.engine_version} is not available",
                field="engine_version",
            )
        self._require_network(stack_name, blueprint.network_id)
        requested = 2 if blueprint.multi_az else 1
        in_use = self._instances_elsewhere(stack_name, DatabaseBlueprint)
        if in_use + requested > self.max_database_instances:
            raise CapacityError(
                f"database instance quota {self.max_database_instances} exceeded "
                f"({in_use} in use, {requested} requested)",
                field="instance_class",
            )
        suffix = _digest(stack_name, blueprint.secret_name, length=6)
        return {
            INSTANCE_ID: blueprint.instance_identifier,
            ENDPOINT: f"{blueprint.instance_identifier}.{_digest(stack_name)}.{self.region}.rds.amazonaws.com",
            PORT: str(blueprint.port),
            SECRET_ARN: (
                f"arn:aws:secretsmanager:{self.region}:{self.account}:secret:{blueprint.secret_name}-{suffix}"
            ),
            BOUNDARY_ID: f"sg-{_digest(stack_name, blueprint.boundary_name)}",
        }

    def _plan_identity(self, stack_name: str, blueprint: IdentityBlueprint) -> Dict[str, str]:
        outputs = {
            USER_POOL_ID: f"{self.region}_{_digest(stack_name, blueprint.user_pool_name, length=9)}",
            CLIENT_ID: _digest(stack_name, blueprint.client_name, length=26),
            DOMAIN: f"{blueprint.domain_prefix}.auth.{self.region}.amazoncognito.com",
        }
        if blueprint.generate_client_secret:
            suffix = _digest(stack_name, blueprint.client_secret_name, length=6)
            outputs[CLIENT_SECRET_ARN] = (
                f"arn:aws:secretsmanager:{self.region}:{self.account}:secret:"
                f"{blueprint.client_secret_name}-{suffix}"
            )
        return outputs

    def _plan_app(self, stack_name: str, blueprint: AppBlueprint) -> Dict[str, str]:
        self._require_network(stack_name, blueprint.network_id)
        if blueprint.instance_count < 1:
            raise ConfigurationError("at least one instance is required", field="instance_count")
        in_use = self._instances_elsewhere(stack_name, AppBlueprint)
        if in_use + blueprint.instance_count > self.max_compute_instances:
            raise CapacityError(
                f"compute instance quota {self.max_compute_instances} exceeded",
                field="instance_count",
            )
        instances = [
            f"i-{_digest(stack_name, blueprint.instance_name, str(i), length=17)}"
            for i in range(blueprint.instance_count)
        ]
        return {
            INSTANCE_IDS: ",".join(instances),
            LOAD_BALANCER_DNS: (
                f"{blueprint.load_balancer_name}-{int(_digest(stack_name, length=8), 16) % 10**9}"
                f".{self.region}.elb.amazonaws.com"
            ),
        }

    def _plan_cdn(self, stack_name: str, blueprint: CdnBlueprint) -> Dict[str, str]:
        return {
            DISTRIBUTION_ID: f"E{_digest(stack_name, 'distribution', length=13).upper()}",
            DISTRIBUTION_DOMAIN: f"d{_digest(stack_name, blueprint.origin_domain, length=13)}.cloudfront.net",
        }
