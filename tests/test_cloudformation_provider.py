"""CloudFormation provider tests: botocore Stubber for API edge cases, moto for a real round trip."""
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import Stubber
from moto import mock_aws

from tierstack.errors import CapacityError, ConfigurationError, TopologyError, TransientProviderError
from tierstack.providers.cloudformation import (
    CloudFormationProvider,
    classify_client_error,
    classify_failure_reason,
    provider_status,
)
from tierstack.stacks.base import Blueprint

STACK = "quarkfin-network-dev"
NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)

VPC_TEMPLATE = {
    "Resources": {"Vpc": {"Type": "AWS::EC2::VPC", "Properties": {"CidrBlock": "10.0.0.0/16"}}},
    "Outputs": {"VpcId": {"Value": {"Ref": "Vpc"}}},
}


def fake_synthesizer(stack_name, blueprint, region):
    return VPC_TEMPLATE


@pytest.fixture
def blueprint():
    return Blueprint(name="quarkfin-vpc-dev", tags=(("Project", "quarkfin"), ("Environment", "dev")))


@pytest.fixture
def stubbed(aws_env):
    session = boto3.session.Session(region_name="us-east-1")
    provider = CloudFormationProvider("us-east-1", session=session, synthesizer=fake_synthesizer, waiter_delay=1)
    with Stubber(provider.cloudformation) as stubber:
        yield provider, stubber
        stubber.assert_no_pending_responses()


def _stack(status, outputs=None, name=STACK):
    stack = {"StackName": name, "StackStatus": status, "CreationTime": NOW}
    if outputs:
        stack["Outputs"] = [{"OutputKey": k, "OutputValue": v} for k, v in outputs.items()]
    return {"Stacks": [stack]}


def _client_error(code, message):
    return ClientError({"Error": {"Code": code, "Message": message}}, "CreateStack")


class TestErrorClassification:
    """Test mapping of AWS errors onto the topology taxonomy"""

    @pytest.mark.parametrize(
        "code, expected",
        [
            ("Throttling", TransientProviderError),
            ("RequestLimitExceeded", TransientProviderError),
            ("LimitExceededException", CapacityError),
            ("InsufficientInstanceCapacity", CapacityError),
            ("ValidationError", ConfigurationError),
            ("AccessDenied", TopologyError),
        ],
    )
    def test_client_errors(self, code, expected):
        """Test each error code maps to its category"""
        error = classify_client_error(_client_error(code, "boom"), STACK)

        assert type(error) is expected
        assert error.stack == STACK

    def test_only_transient_errors_are_retryable(self):
        """Test retryability follows the category"""
        assert classify_client_error(_client_error("Throttling", "x"), STACK).retryable
        assert not classify_client_error(_client_error("LimitExceededException", "x"), STACK).retryable

    @pytest.mark.parametrize(
        "reason, expected",
        [
            ("Database: Cannot find version 9.1 for postgres", ConfigurationError),
            ("Vpc: The maximum number of VPCs has been reached (limit exceeded)", CapacityError),
            ("Instance: something else went wrong", TopologyError),
        ],
    )
    def test_failure_reasons(self, reason, expected):
        """Test rollback reasons map to their category"""
        assert type(classify_failure_reason(reason, STACK)) is expected

    @pytest.mark.parametrize(
        "status, expected",
        [
            ("CREATE_COMPLETE", "available"),
            ("UPDATE_COMPLETE", "available"),
            ("UPDATE_IN_PROGRESS", "in_progress"),
            ("ROLLBACK_COMPLETE", "failed"),
        ],
    )
    def test_provider_status(self, status, expected):
        """Test CloudFormation states collapse to provider states"""
        assert provider_status(status) == expected


class TestStubbedProvider:
    """Test CloudFormation call sequences"""

    def test_no_updates_returns_current_outputs(self, stubbed, blueprint):
        """Test an unchanged template is not an error"""
        provider, stubber = stubbed
        stubber.add_response("describe_stacks", _stack("CREATE_COMPLETE", {"VpcId": "vpc-1"}), {"StackName": STACK})
        stubber.add_client_error(
            "update_stack", service_error_code="ValidationError", service_message="No updates are to be performed."
        )
        stubber.add_response("describe_stacks", _stack("CREATE_COMPLETE", {"VpcId": "vpc-1"}), {"StackName": STACK})

        outputs = provider.deploy(STACK, blueprint)

        assert outputs == {"VpcId": "vpc-1", "Status": "available"}

    def test_throttled_create(self, stubbed, blueprint):
        """Test throttling on create surfaces as a transient error"""
        provider, stubber = stubbed
        stubber.add_client_error(
            "describe_stacks", service_error_code="ValidationError", service_message=f"Stack with id {STACK} does not exist"
        )
        stubber.add_client_error("create_stack", service_error_code="Throttling", service_message="Rate exceeded")

        with pytest.raises(TransientProviderError) as excinfo:
            provider.deploy(STACK, blueprint)
        assert excinfo.value.stack == STACK

    def test_rolled_back_create(self, stubbed, blueprint):
        """Test a create that rolls back reports the first failed resource"""
        provider, stubber = stubbed
        stubber.add_client_error(
            "describe_stacks", service_error_code="ValidationError", service_message=f"Stack with id {STACK} does not exist"
        )
        stubber.add_response("create_stack", {"StackId": f"arn:aws:cloudformation:us-east-1:123456789012:stack/{STACK}/1"})
        stubber.add_response("describe_stacks", _stack("DELETE_COMPLETE"), {"StackName": STACK})
        stubber.add_response(
            "describe_stack_events",
            {
                "StackEvents": [
                    {
                        "StackId": STACK,
                        "EventId": "2",
                        "StackName": STACK,
                        "Timestamp": NOW,
                        "LogicalResourceId": STACK,
                        "ResourceStatus": "DELETE_COMPLETE",
                    },
                    {
                        "StackId": STACK,
                        "EventId": "1",
                        "StackName": STACK,
                        "Timestamp": NOW,
                        "LogicalResourceId": "Vpc",
                        "ResourceStatus": "CREATE_FAILED",
                        "ResourceStatusReason": "The maximum number of VPCs has been reached (limit exceeded)",
                    },
                ]
            },
            {"StackName": STACK},
        )

        with pytest.raises(CapacityError) as excinfo:
            provider.deploy(STACK, blueprint)
        assert "Vpc" in excinfo.value.message

    def test_status_of_missing_stack(self, stubbed):
        """Test a stack that does not exist has no status"""
        provider, stubber = stubbed
        stubber.add_client_error(
            "describe_stacks", service_error_code="ValidationError", service_message=f"Stack with id {STACK} does not exist"
        )

        assert provider.status(STACK) is None


class TestMotoProvider:
    """Test a create, read and delete against moto"""

    @mock_aws
    def test_availability_zones(self, aws_env):
        """Test zones are listed sorted for the region"""
        provider = CloudFormationProvider("us-east-1", synthesizer=fake_synthesizer)

        zones = provider.availability_zones("us-east-1")

        assert len(zones) >= 2
        assert list(zones) == sorted(zones)
        assert all(zone.startswith("us-east-1") for zone in zones)

    @mock_aws
    def test_deploy_and_destroy(self, aws_env, blueprint):
        """Test a stack is created with outputs and then removed"""
        provider = CloudFormationProvider("us-east-1", synthesizer=fake_synthesizer, waiter_delay=1)

        outputs = provider.deploy(STACK, blueprint)

        assert outputs["VpcId"].startswith("vpc-")
        assert outputs["Status"] == "available"
        assert provider.status(STACK) == "available"

        provider.destroy(STACK)

        assert provider.status(STACK) is None


def stub_create(stubber, stack_name, outputs):
    """Queue the calls of a create that completes on the first waiter poll."""
    stubber.add_client_error(
        "describe_stacks", service_error_code="ValidationError", service_message=f"Stack with id {stack_name} does not exist"
    )
    stubber.add_response(
        "create_stack", {"StackId": f"arn:aws:cloudformation:us-east-1:123456789012:stack/{stack_name}/1"}
    )
    stubber.add_response("describe_stacks", _stack("CREATE_COMPLETE", outputs, stack_name), {"StackName": stack_name})
    stubber.add_response("describe_stacks", _stack("CREATE_COMPLETE", outputs, stack_name), {"StackName": stack_name})


class TrackingSynthesizer:
    """Records how many synthesis calls overlap."""

    def __init__(self):
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def __call__(self, stack_name, blueprint, region):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        time.sleep(0.05)
        with self._lock:
            self.active -= 1
        return VPC_TEMPLATE


class TestConcurrentDeploys:
    """Test stacks of one wave deployed from parallel threads"""

    def test_synthesis_is_serialized(self, aws_env, blueprint):
        """Test two parallel deploys never synthesize at the same time"""
        synthesizer = TrackingSynthesizer()
        providers = [
            CloudFormationProvider(
                "us-east-1",
                session=boto3.session.Session(region_name="us-east-1"),
                synthesizer=synthesizer,
                waiter_delay=1,
            )
            for _ in range(2)
        ]
        names = ["quarkfin-network-dev", "quarkfin-identity-dev"]

        with Stubber(providers[0].cloudformation) as first, Stubber(providers[1].cloudformation) as second:
            stub_create(first, names[0], {"VpcId": "vpc-1"})
            stub_create(second, names[1], {"UserPoolId": "us-east-1_abc"})
            with ThreadPoolExecutor(max_workers=2) as pool:
                futures = [pool.submit(p.deploy, name, blueprint) for p, name in zip(providers, names)]
                results = [f.result(timeout=30) for f in futures]

        assert synthesizer.peak == 1
        assert results[0]["VpcId"] == "vpc-1"
        assert results[1]["UserPoolId"] == "us-east-1_abc"
