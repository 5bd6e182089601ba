import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from tierstack.errors import ConfigurationError

ENVIRONMENTS = ("dev", "staging", "prod")
DEFAULT_REGION = "us-east-1"
PROJECT_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]{1,30}[a-z0-9]$")

FORWARD = "forward"
CACHE = "cache"
CATCH_ALL_PATTERNS = ("/*", "*")


@dataclass(frozen=True)
class StackProps:
    project_name: str
    environment: str

    def __post_init__(self):
        if not self.project_name:
            raise ConfigurationError("project name is required", field="project_name")
        if not PROJECT_NAME_PATTERN.match(self.project_name):
            raise ConfigurationError(
                f"'{self.project_name}' must be 3-32 lowercase letters, digits or hyphens",
                field="project_name",
            )
        if not self.environment:
            raise ConfigurationError("environment is required", field="environment")
        if self.environment not in ENVIRONMENTS:
            raise ConfigurationError(
                f"'{self.environment}' is not one of {', '.join(ENVIRONMENTS)}",
                field="environment",
            )

    def resource_name(self, kind: str) -> str:
        """Build a resource name, e.g. quarkfin-database-dev."""
        return f"{self.project_name}-{kind}-{self.environment}".lower()


@dataclass(frozen=True)
class NetworkConfig:
    cidr: str = "10.0.0.0/16"
    min_zones: int = 2
    max_zones: int = 2
    nat_gateways: int = 1
    subnet_cidr_mask: int = 24


@dataclass(frozen=True)
class DatabaseConfig:
    engine: str
    engine_version: str
    instance_class: str
    allocated_storage_gb: int
    multi_az: bool
    backup_retention_days: int
    deletion_protection: bool
    performance_insights: bool
    port: int = 5432
    database_name: str = "app"
    username: str = "app_admin"


@dataclass(frozen=True)
class ComputeConfig:
    instance_type: str
    instance_count: int
    frontend_port: int = 3000
    backend_port: int = 8080
    volume_size_gb: int = 30


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_lowercase: bool = True
    require_uppercase: bool = True
    require_digits: bool = True
    require_symbols: bool = False


@dataclass(frozen=True)
class IdentityConfig:
    mfa: str = "optional"
    password_policy: PasswordPolicy = field(default_factory=PasswordPolicy)
    callback_urls: Tuple[str, ...] = ("http://localhost:3000/auth/callback",)
    logout_urls: Tuple[str, ...] = ("http://localhost:3000/login",)
    generate_client_secret: bool = False


@dataclass(frozen=True)
class EnvironmentProfile:
    name: str
    network: NetworkConfig
    database: DatabaseConfig
    compute: ComputeConfig
    identity: IdentityConfig


@dataclass(frozen=True)
class PathBehavior:
    pattern: str
    mode: str

    @property
    def is_catch_all(self) -> bool:
        return self.pattern in CATCH_ALL_PATTERNS


@dataclass(frozen=True)
class PathPolicy:
    behaviors: Tuple[PathBehavior, ...]
    version: int = 1

    @classmethod
    def parse(cls, entries: Sequence[str], version: int = 1) -> "PathPolicy":
        """Build a policy from ``PATTERN=MODE`` strings, e.g. ``/api/*=forward``."""
        behaviors = []
        for entry in entries:
            pattern, sep, mode = entry.rpartition("=")
            if not sep:
                raise ConfigurationError(
                    f"'{entry}' is not of the form PATTERN=MODE", stack="cdn", field="path_policy"
                )
            behaviors.append(PathBehavior(pattern.strip(), mode.strip().lower()))
        return cls(tuple(behaviors), version=version)

    def validate(self) -> "PathPolicy":
        if not self.behaviors:
            raise ConfigurationError(
                "at least one path behavior is required", stack="cdn", field="path_policy"
            )
        seen = set()
        for behavior in self.behaviors:
            if behavior.mode not in (FORWARD, CACHE):
                raise ConfigurationError(
                    f"mode for '{behavior.pattern}' must be '{FORWARD}' or '{CACHE}', "
                    f"got '{behavior.mode}'",
                    stack="cdn",
                    field="path_policy",
                )
            if not behavior.pattern or not (
                behavior.pattern.startswith("/") or behavior.pattern == "*"
            ):
                raise ConfigurationError(
                    f"pattern '{behavior.pattern}' must start with '/'",
                    stack="cdn",
                    field="path_policy",
                )
            if behavior.pattern in seen:
                raise ConfigurationError(
                    f"pattern '{behavior.pattern}' is listed twice", stack="cdn", field="path_policy"
                )
            seen.add(behavior.pattern)
        catch_all = [b for b in self.behaviors if b.is_catch_all]
        if len(catch_all) != 1:
            raise ConfigurationError(
                "exactly one catch-all pattern ('/*') is required", stack="cdn", field="path_policy"
            )
        return self

    @property
    def default(self) -> PathBehavior:
        return next(b for b in self.behaviors if b.is_catch_all)

    @property
    def additional(self) -> List[PathBehavior]:
        return [b for b in self.behaviors if not b.is_catch_all]


# Sizing and version policy per environment
DEV_PROFILE = EnvironmentProfile(
    name="dev",
    network=NetworkConfig(nat_gateways=1),
    database=DatabaseConfig(
        engine="postgres",
        engine_version="15.4",
        instance_class="db.t3.micro",
        allocated_storage_gb=20,
        multi_az=False,
        backup_retention_days=1,
        deletion_protection=False,
        performance_insights=False,
    ),
    compute=ComputeConfig(instance_type="t3.small", instance_count=1),
    identity=IdentityConfig(),
)

STAGING_PROFILE = EnvironmentProfile(
    name="staging",
    network=NetworkConfig(nat_gateways=1),
    database=DatabaseConfig(
        engine="postgres",
        engine_version="15.4",
        instance_class="db.t3.small",
        allocated_storage_gb=50,
        multi_az=False,
        backup_retention_days=7,
        deletion_protection=False,
        performance_insights=False,
    ),
    compute=ComputeConfig(instance_type="t3.medium", instance_count=2),
    identity=IdentityConfig(),
)

PRODUCTION_PROFILE = EnvironmentProfile(
    name="prod",
    network=NetworkConfig(max_zones=3, nat_gateways=3),
    database=DatabaseConfig(
        engine="postgres",
        engine_version="15.4",
        instance_class="db.m6g.large",
        allocated_storage_gb=100,
        multi_az=True,
        backup_retention_days=30,
        deletion_protection=True,
        performance_insights=True,
    ),
    compute=ComputeConfig(instance_type="t3.large", instance_count=2),
    identity=IdentityConfig(
        callback_urls=("https://app.quarkfin.ai/auth/callback",),
        logout_urls=("https://app.quarkfin.ai/login",),
    ),
)

ENVIRONMENT_PROFILES: Dict[str, EnvironmentProfile] = {
    "dev": DEV_PROFILE,
    "staging": STAGING_PROFILE,
    "prod": PRODUCTION_PROFILE,
}


def environment_profile(environment: str) -> EnvironmentProfile:
    try:
        return ENVIRONMENT_PROFILES[environment]
    except KeyError:
        raise ConfigurationError(
            f"no sizing profile for '{environment}'", field="environment"
        ) from None


def database_sizing(environment: str) -> DatabaseConfig:
    """Database sizing and engine version for an environment. Pure and total over ENVIRONMENTS."""
    return environment_profile(environment).database


@dataclass(frozen=True)
class TopologyConfig:
    props: StackProps
    region: str
    profile: EnvironmentProfile
    path_policy: Optional[PathPolicy]

    @property
    def project_name(self) -> str:
        return self.props.project_name

    @property
    def environment(self) -> str:
        return self.props.environment


def load_topology_config(
    project_name: str,
    environment: str,
    path_policy: Optional[PathPolicy],
    region: Optional[str] = None,
    profile: Optional[EnvironmentProfile] = None,
    require_path_policy: bool = True,
) -> TopologyConfig:
    """
    Validate every deployment input once, before any provider call.

    Teardown only needs names and ordering, so it may pass
    ``require_path_policy=False``.
    """
    props = StackProps(project_name=project_name, environment=environment)
    if path_policy is None and require_path_policy:
        raise ConfigurationError("an explicit path policy is required", stack="cdn", field="path_policy")
    profile = profile or environment_profile(environment)
    if profile.name != environment:
        raise ConfigurationError(
            f"profile '{profile.name}' does not match environment '{environment}'",
            field="environment",
        )
    if profile.network.min_zones < 2:
        raise ConfigurationError("at least two availability zones are required", field="network.min_zones")
    if profile.network.max_zones < profile.network.min_zones:
        raise ConfigurationError("max_zones is below min_zones", field="network.max_zones")
    if profile.compute.instance_count < 1:
        raise ConfigurationError("at least one compute instance is required", field="compute.instance_count")
    return TopologyConfig(
        props=props,
        region=region or DEFAULT_REGION,
        profile=profile,
        path_policy=path_policy.validate() if path_policy is not None else None,
    )
