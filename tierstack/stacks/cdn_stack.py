from dataclasses import dataclass
from typing import Mapping, Tuple

from tierstack.config.environments import PathBehavior, TopologyConfig
from tierstack.errors import ConfigurationError
from tierstack.handles import ComputeHandle, DistributionHandle, require_handle, require_value
from tierstack.stacks.base import Blueprint, TopologyStack

ORIGIN_HTTP_PORT = 80
PRICE_CLASS = "PriceClass_100"
VIEWER_PROTOCOL = "redirect-to-https"

# Output keys
DISTRIBUTION_ID = "DistributionId"
DISTRIBUTION_DOMAIN = "DistributionDomainName"


@dataclass(frozen=True)
class CdnBlueprint(Blueprint):
    comment: str
    origin_domain: str
    origin_http_port: int
    default_behavior: PathBehavior
    additional_behaviors: Tuple[PathBehavior, ...]
    policy_version: int
    price_class: str
    viewer_protocol: str
    log_prefix: str


class CdnStack(TopologyStack):
    """Edge distribution in front of the application load balancer."""

    kind = "cdn"
    component = "Delivery"

    def __init__(self, config: TopologyConfig, compute: ComputeHandle):
        super().__init__(config)
        self.compute = require_handle(compute, ComputeHandle, self.stack_name, "compute")
        require_value(compute.load_balancer_endpoint, self.stack_name, "compute.load_balancer_endpoint")
        if config.path_policy is None:
            raise ConfigurationError(
                "an explicit path policy is required", stack=self.stack_name, field="path_policy"
            )
        self.path_policy = config.path_policy.validate()

    def blueprint(self, provider) -> CdnBlueprint:
        policy = self.path_policy
        return CdnBlueprint(
            name=self.props.resource_name("cdn"),
            tags=self.tags(),
            comment=f"{self.props.project_name} {self.props.environment} CDN",
            origin_domain=self.compute.load_balancer_endpoint,
            origin_http_port=ORIGIN_HTTP_PORT,
            default_behavior=policy.default,
            additional_behaviors=tuple(policy.additional),
            policy_version=policy.version,
            price_class=PRICE_CLASS,
            viewer_protocol=VIEWER_PROTOCOL,
            log_prefix=self.props.resource_name("cdn-logs"),
        )

    def to_handle(self, blueprint: CdnBlueprint, outputs: Mapping[str, str]) -> DistributionHandle:
        return DistributionHandle(
            stack_name=self.stack_name,
            status=self.status_of(outputs),
            distribution_id=self.output(outputs, DISTRIBUTION_ID),
            domain_name=self.output(outputs, DISTRIBUTION_DOMAIN),
        )
