"""
Shared fixtures.

Stack and orchestration tests run against the in-memory provider; the
CloudFormation provider is exercised with botocore Stubber and moto.
"""
import pytest

from tierstack.config.environments import PathPolicy, load_topology_config
from tierstack.ledger import Ledger
from tierstack.orchestrator import Orchestrator, RetryPolicy
from tierstack.providers import InMemoryProvider
from tierstack.topology import build_topology

PROJECT = "quarkfin"
REGION = "us-east-1"


@pytest.fixture
def path_policy():
    return PathPolicy.parse(["/api/*=forward", "/_next/static/*=cache", "/*=cache"])


@pytest.fixture
def make_config(path_policy):
    def _make(environment="dev", **overrides):
        options = {"path_policy": path_policy, "region": REGION}
        options.update(overrides)
        return load_topology_config(PROJECT, environment, **options)

    return _make


@pytest.fixture
def config(make_config):
    return make_config("dev")


@pytest.fixture
def prod_config(make_config):
    return make_config("prod")


@pytest.fixture
def provider():
    return InMemoryProvider(region=REGION)


@pytest.fixture
def ledger(tmp_path):
    return Ledger(tmp_path / "ledger.json")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(provider, ledger, sleeps):
    return Orchestrator(
        provider,
        ledger,
        retry=RetryPolicy(max_attempts=3, initial_delay=1.0, multiplier=2.0, max_delay=1.5),
        sleep=sleeps.append,
    )


@pytest.fixture
def topology(config):
    return build_topology(config)


@pytest.fixture
def handles(orchestrator, topology):
    """Handles of a fully deployed dev topology."""
    return orchestrator.deploy(topology).handles


@pytest.fixture
def aws_env(monkeypatch):
    """Set fake AWS credentials so boto3 doesn't error in tests."""
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
