import dataclasses

import pytest

from tierstack.config.environments import IdentityConfig, PasswordPolicy
from tierstack.errors import CapacityError, ConfigurationError, DependencyUnavailableError
from tierstack.handles import COMPUTE_ROLE, LOAD_BALANCER_ROLE, CredentialHandle
from tierstack.providers import InMemoryProvider
from tierstack.stacks import AppStack, CdnStack, DatabaseStack, IdentityStack, NetworkStack
from tierstack.stacks.app_stack import check_runtime_environment
from tierstack.stacks.network_stack import ANY_IPV4_CIDR, BOUNDARY_SOURCE, CIDR_SOURCE


@pytest.fixture
def network(config, provider):
    return NetworkStack(config).provision(provider)


@pytest.fixture
def database(config, provider, network):
    return DatabaseStack(config, network, network.compute_boundary).provision(provider)


@pytest.fixture
def identity(config, provider):
    return IdentityStack(config).provision(provider)


@pytest.fixture
def compute(config, provider, network, database, identity):
    return AppStack(
        config, network, database, identity, network.compute_boundary, network.load_balancer_boundary
    ).provision(provider)


class TestNetworkStack:
    """Test network and access boundaries"""

    def test_internet_reaches_load_balancer_only(self, config):
        """Test every public rule targets the load balancer on 80/443"""
        rules = NetworkStack(config).access_rules()
        public = [(role, rule) for role, rule in rules if rule.source == ANY_IPV4_CIDR]

        assert {rule.port for _, rule in public} == {80, 443}
        assert all(role == LOAD_BALANCER_ROLE for role, _ in public)

    def test_compute_only_admits_load_balancer(self, config):
        """Test the compute boundary has no internet or SSH rule"""
        stack = NetworkStack(config)
        rules = [rule for role, rule in stack.access_rules() if role == COMPUTE_ROLE]

        assert {rule.port for rule in rules} == {3000, 8080}
        assert all(rule.source_kind == BOUNDARY_SOURCE for rule in rules)
        assert all(rule.source == stack.load_balancer_boundary().name for rule in rules)
        assert not any(rule.source_kind == CIDR_SOURCE and rule.port == 22 for _, rule in stack.access_rules())

    def test_single_zone_region_is_rejected(self, config):
        """Test a region with one zone fails before anything is requested"""
        provider = InMemoryProvider(zones=["us-east-1a"])

        with pytest.raises(CapacityError) as excinfo:
            NetworkStack(config).provision(provider)

        assert excinfo.value.stack == "quarkfin-network-dev"
        assert provider.deploy_calls == []

    def test_prod_uses_three_zones_with_nat_per_zone(self, prod_config, provider):
        """Test prod spreads across three zones"""
        blueprint = NetworkStack(prod_config).blueprint(provider)

        assert len(blueprint.availability_zones) == 3
        assert blueprint.nat_gateways == 3
        assert blueprint.flow_log_traffic == "REJECT"

    def test_handle(self, network):
        """Test the handle exposes both boundaries and both tiers"""
        assert network.available
        assert network.stack_name == "quarkfin-network-dev"
        assert len(network.public_subnet_ids) == 2
        assert len(network.private_subnet_ids) == 2
        assert network.compute_boundary.role == COMPUTE_ROLE
        assert network.load_balancer_boundary.name == "quarkfin-alb-sg-dev"


class TestDatabaseStack:
    """Test the managed database"""

    def test_dev_database(self, database):
        """Test dev gets a single-instance database with a secret reference"""
        assert database.instance_count == 1
        assert database.replicated is False
        assert database.engine == "postgres"
        assert database.credential.secret_ref.startswith("arn:aws:secretsmanager:")
        assert ":secret:quarkfin-db-secret-dev-" in database.credential.secret_ref

    def test_prod_database_is_replicated(self, prod_config, provider):
        """Test prod gets a replicated, protected database"""
        network = NetworkStack(prod_config).provision(provider)
        stack = DatabaseStack(prod_config, network, network.compute_boundary)
        blueprint = stack.blueprint(provider)
        database = stack.provision(provider)

        assert database.replicated is True
        assert database.instance_count >= 2
        assert blueprint.deletion_protection is True
        assert blueprint.backup_retention_days == 30

    def test_private_and_encrypted(self, config, provider, network):
        """Test the instance is never public and always encrypted"""
        blueprint = DatabaseStack(config, network, network.compute_boundary).blueprint(provider)

        assert blueprint.publicly_accessible is False
        assert blueprint.storage_encrypted is True
        assert blueprint.private_subnet_ids == network.private_subnet_ids
        assert blueprint.compute_boundary_id == network.compute_boundary.boundary_id

    def test_missing_network(self, config, network):
        """Test a missing network handle is rejected by name"""
        with pytest.raises(DependencyUnavailableError) as excinfo:
            DatabaseStack(config, None, network.compute_boundary)
        assert excinfo.value.field == "network"

    def test_wrong_boundary_role(self, config, network):
        """Test the load balancer boundary cannot stand in for compute"""
        with pytest.raises(DependencyUnavailableError) as excinfo:
            DatabaseStack(config, network, network.load_balancer_boundary)
        assert excinfo.value.field == "compute_boundary"

    def test_unsupported_engine_version_leaves_nothing(self, config, network):
        """Test an unavailable engine version fails without creating a database"""
        provider = InMemoryProvider(engine_versions={"postgres": ("16.1",)})
        NetworkStack(config).provision(provider)

        with pytest.raises(ConfigurationError) as excinfo:
            DatabaseStack(config, network, network.compute_boundary).provision(provider)

        assert excinfo.value.stack == "quarkfin-database-dev"
        assert "quarkfin-database-dev" not in provider.stacks()

    def test_quota_exceeded(self, config, network):
        """Test an exhausted instance quota is a capacity error"""
        provider = InMemoryProvider(max_database_instances=0)
        NetworkStack(config).provision(provider)

        with pytest.raises(CapacityError):
            DatabaseStack(config, network, network.compute_boundary).provision(provider)
        assert "quarkfin-database-dev" not in provider.stacks()


class TestIdentityStack:
    """Test the user directory"""

    def test_handle(self, identity):
        """Test the handle has a pool, a client and the hosted domain"""
        assert identity.user_pool_id.startswith("us-east-1_")
        assert identity.client_id
        assert identity.domain.startswith("quarkfin-auth-dev.")
        assert identity.client_secret is None

    def test_blueprint_floor(self, config, provider):
        """Test the default directory meets the password and MFA floor"""
        blueprint = IdentityStack(config).blueprint(provider)

        assert blueprint.mfa in ("optional", "required")
        assert blueprint.password_policy.min_length >= 8
        assert blueprint.password_policy.require_digits is True
        assert set(blueprint.sign_in_aliases) == {"email", "phone"}
        assert "openid" in blueprint.oauth_scopes

    @pytest.mark.parametrize(
        "identity_config",
        [
            IdentityConfig(mfa="off"),
            IdentityConfig(password_policy=PasswordPolicy(min_length=6)),
            IdentityConfig(password_policy=PasswordPolicy(require_uppercase=False)),
        ],
        ids=["mfa-off", "short-password", "no-uppercase"],
    )
    def test_floor_cannot_be_loosened(self, make_config, identity_config):
        """Test weaker identity settings are rejected"""
        profile = dataclasses.replace(make_config("dev").profile, identity=identity_config)
        config = make_config("dev", profile=profile)

        with pytest.raises(ConfigurationError):
            IdentityStack(config)

    def test_tightened_policy_is_allowed(self, make_config, provider):
        """Test required MFA and symbols are accepted"""
        identity_config = IdentityConfig(
            mfa="required",
            password_policy=PasswordPolicy(min_length=12, require_symbols=True),
            generate_client_secret=True,
        )
        profile = dataclasses.replace(make_config("dev").profile, identity=identity_config)
        handle = IdentityStack(make_config("dev", profile=profile)).provision(provider)

        assert isinstance(handle.client_secret, CredentialHandle)
        assert ":secret:quarkfin-client-secret-dev-" in handle.client_secret.secret_ref


class TestAppStack:
    """Test that compute validates every upstream contract"""

    def test_compute_handle(self, compute):
        """Test the handle has instances and a load balancer endpoint"""
        assert len(compute.instance_ids) == 1
        assert compute.load_balancer_endpoint.endswith(".elb.amazonaws.com")
        assert compute.api_base_path == "/api"

    @pytest.mark.parametrize("missing", ["network", "database", "identity"])
    def test_missing_handle(self, config, network, database, identity, missing):
        """Test each missing upstream handle is named in the error"""
        inputs = {"network": network, "database": database, "identity": identity}
        inputs[missing] = None

        with pytest.raises(DependencyUnavailableError) as excinfo:
            AppStack(
                config,
                inputs["network"],
                inputs["database"],
                inputs["identity"],
                network.compute_boundary,
                network.load_balancer_boundary,
            )
        assert excinfo.value.field == missing
        assert excinfo.value.stack == "quarkfin-app-dev"

    def test_unavailable_database(self, config, network, database, identity):
        """Test a database that is not available blocks compute"""
        modifying = dataclasses.replace(database, status="modifying")

        with pytest.raises(DependencyUnavailableError) as excinfo:
            AppStack(config, network, modifying, identity, network.compute_boundary, network.load_balancer_boundary)
        assert excinfo.value.field == "database"

    def test_missing_client_id(self, config, network, database, identity):
        """Test an identity handle without a client id is rejected"""
        no_client = dataclasses.replace(identity, client_id="")

        with pytest.raises(DependencyUnavailableError) as excinfo:
            AppStack(config, network, database, no_client, network.compute_boundary, network.load_balancer_boundary)
        assert excinfo.value.field == "identity.client_id"

    def test_swapped_boundaries(self, config, network, database, identity):
        """Test boundaries must be passed in their own roles"""
        with pytest.raises(DependencyUnavailableError) as excinfo:
            AppStack(config, network, database, identity, network.load_balancer_boundary, network.compute_boundary)
        assert excinfo.value.field == "compute_boundary"

    def test_runtime_environment_holds_references_only(self, config, network, database, identity):
        """Test the runtime gets the secret ARN and never a password"""
        stack = AppStack(
            config, network, database, identity, network.compute_boundary, network.load_balancer_boundary
        )
        environment = stack.runtime_environment()

        assert environment["DATABASE_SECRET_ARN"] == database.credential.secret_ref
        assert environment["COGNITO_CLIENT_ID"] == identity.client_id
        assert not any("PASSWORD" in key for key in environment)

    def test_literal_secret_is_refused(self):
        """Test a key that would carry a secret value is rejected"""
        with pytest.raises(ConfigurationError) as excinfo:
            check_runtime_environment({"DATABASE_PASSWORD": "hunter2"}, "quarkfin-app-dev")
        assert excinfo.value.field == "runtime_environment.DATABASE_PASSWORD"

    def test_routing_blueprint(self, config, provider, network, database, identity):
        """Test one listener on 80 with API paths going to the backend"""
        blueprint = AppStack(
            config, network, database, identity, network.compute_boundary, network.load_balancer_boundary
        ).blueprint(provider)

        assert blueprint.listener_port == 80
        assert blueprint.api_path_pattern == "/api/*"
        assert blueprint.backend.port == 8080
        assert blueprint.frontend.port == 3000
        assert blueprint.backend.health_check.path == "/health"
        assert blueprint.readable_secret_refs == (database.credential.secret_ref,)


class TestCdnStack:
    """Test the edge distribution"""

    def test_distribution(self, config, provider, compute):
        """Test the distribution fronts the load balancer over HTTP"""
        stack = CdnStack(config, compute)
        blueprint = stack.blueprint(provider)
        distribution = stack.provision(provider)

        assert blueprint.origin_domain == compute.load_balancer_endpoint
        assert blueprint.origin_http_port == 80
        assert blueprint.viewer_protocol == "redirect-to-https"
        assert blueprint.default_behavior.pattern == "/*"
        assert distribution.url.startswith("https://")
        assert distribution.domain_name.endswith(".cloudfront.net")

    def test_missing_compute(self, config):
        """Test a missing compute handle is rejected"""
        with pytest.raises(DependencyUnavailableError) as excinfo:
            CdnStack(config, None)
        assert excinfo.value.field == "compute"
