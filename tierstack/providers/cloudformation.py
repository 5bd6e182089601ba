import json
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
    WaiterError,
)

from tierstack.errors import (
    CapacityError,
    ConfigurationError,
    TopologyError,
    TransientProviderError,
)
from tierstack.handles import AVAILABLE
from tierstack.providers.base import Provider
from tierstack.stacks.base import STATUS_OUTPUT, Blueprint

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "ServiceUnavailable",
    "InternalFailure",
    "RequestTimeout",
}
CAPACITY_ERROR_CODES = {
    "LimitExceededException",
    "InsufficientInstanceCapacity",
    "InstanceLimitExceeded",
    "InstanceQuotaExceeded",
    "StorageQuotaExceeded",
}
CAPACITY_REASON_MARKERS = ("limit exceeded", "quota", "insufficient", "capacity")
CONFIGURATION_REASON_MARKERS = ("cannot find version", "not supported", "invalid", "does not support")

NO_UPDATES = "No updates are to be performed"
CAPABILITIES = ["CAPABILITY_IAM", "CAPABILITY_NAMED_IAM"]

# One jsii Node.js process serves the whole interpreter and is not thread-safe
_SYNTH_LOCK = threading.Lock()


def classify_client_error(error: ClientError, stack_name: str) -> TopologyError:
    """Map a CloudFormation API error onto the topology error taxonomy."""
    code = error.response.get("Error", {}).get("Code", "")
    message = error.response.get("Error", {}).get("Message", str(error))
    if code in TRANSIENT_ERROR_CODES:
        return TransientProviderError(f"{code}: {message}", stack=stack_name)
    if code in CAPACITY_ERROR_CODES:
        return CapacityError(f"{code}: {message}", stack=stack_name)
    if code == "ValidationError":
        return ConfigurationError(message, stack=stack_name)
    return TopologyError(f"{code}: {message}", stack=stack_name)


def classify_failure_reason(reason: str, stack_name: str) -> TopologyError:
    """Map the first failed resource event of a rolled-back stack onto the taxonomy."""
    lowered = reason.lower()
    if any(marker in lowered for marker in CAPACITY_REASON_MARKERS):
        return CapacityError(reason, stack=stack_name)
    if any(marker in lowered for marker in CONFIGURATION_REASON_MARKERS):
        return ConfigurationError(reason, stack=stack_name)
    return TopologyError(reason, stack=stack_name)


def provider_status(stack_status: str) -> str:
    if stack_status in ("ROLLBACK_COMPLETE", "ROLLBACK_FAILED", "CREATE_FAILED", "DELETE_FAILED"):
        return "failed"
    if stack_status.endswith("_IN_PROGRESS"):
        return "in_progress"
    if stack_status.endswith("_COMPLETE"):
        return AVAILABLE
    return stack_status.lower()


class CloudFormationProvider(Provider):
    """
    Deploys each blueprint as its own CloudFormation stack.

    Templates are synthesized from the blueprint by the aws-cdk components;
    creates use ``OnFailure=DELETE`` and failed updates are rolled back by
    CloudFormation, so a failed stack never stays half-built.
    """

    name = "aws"

    def __init__(
        self,
        region: str,
        session: Optional[boto3.session.Session] = None,
        synthesizer: Optional[Callable[[str, Blueprint, str], Dict]] = None,
        waiter_delay: int = 15,
        waiter_max_attempts: int = 240,
    ):
        self.region = region
        self.session = session or boto3.session.Session(region_name=region)
        self.cloudformation = self.session.client("cloudformation", region_name=region)
        self.ec2 = self.session.client("ec2", region_name=region)
        self._synthesizer = synthesizer
        self.waiter_config = {"Delay": waiter_delay, "MaxAttempts": waiter_max_attempts}

    # ------------------------------------------------------------------
    # Provider API
    # ------------------------------------------------------------------

    def availability_zones(self, region: str) -> Sequence[str]:
        with self._translate_errors("availability-zones"):
            response = self.ec2.describe_availability_zones()
        return sorted(
            zone["ZoneName"]
            for zone in response["AvailabilityZones"]
            if zone.get("State", "available") == "available"
            and zone.get("ZoneType", "availability-zone") == "availability-zone"
        )

    def deploy(self, stack_name: str, blueprint: Blueprint) -> Mapping[str, str]:
        template = self.synthesize(stack_name, blueprint)
        params = {
            "StackName": stack_name,
            "TemplateBody": json.dumps(template),
            "Capabilities": CAPABILITIES,
            "Tags": [{"Key": key, "Value": value} for key, value in blueprint.tags],
        }
        with self._translate_errors(stack_name):
            if self._exists(stack_name):
                try:
                    self.cloudformation.update_stack(**params)
                except ClientError as exc:
                    if NO_UPDATES in exc.response.get("Error", {}).get("Message", ""):
                        logger.info("No changes", extra={"stack": stack_name})
                        return self._outputs(stack_name)
                    raise
                logger.info("Updating stack", extra={"stack": stack_name})
                self._wait("stack_update_complete", stack_name)
            else:
                logger.info("Creating stack", extra={"stack": stack_name})
                self.cloudformation.create_stack(OnFailure="DELETE", **params)
                self._wait("stack_create_complete", stack_name)
            return self._outputs(stack_name)

    def destroy(self, stack_name: str) -> None:
        with self._translate_errors(stack_name):
            if not self._exists(stack_name):
                return
            logger.info("Deleting stack", extra={"stack": stack_name})
            self.cloudformation.delete_stack(StackName=stack_name)
            self._wait("stack_delete_complete", stack_name)

    def status(self, stack_name: str) -> Optional[str]:
        with self._translate_errors(stack_name):
            stack = self._describe(stack_name)
        if stack is None:
            return None
        return provider_status(stack["StackStatus"])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def synthesize(self, stack_name: str, blueprint: Blueprint) -> Dict:
        synthesizer = self._synthesizer
        if synthesizer is None:
            # aws-cdk starts a Node.js runtime on import; only pay for it here
            from tierstack.components import synthesize_template

            synthesizer = synthesize_template
        with _SYNTH_LOCK:
            return synthesizer(stack_name, blueprint, self.region)

    def _describe(self, stack_name: str) -> Optional[Dict]:
        try:
            response = self.cloudformation.describe_stacks(StackName=stack_name)
        except ClientError as exc:
            if "does not exist" in exc.response.get("Error", {}).get("Message", ""):
                return None
            raise
        stacks = response.get("Stacks", [])
        if not stacks or stacks[0]["StackStatus"] == "DELETE_COMPLETE":
            return None
        return stacks[0]

    def _exists(self, stack_name: str) -> bool:
        stack = self._describe(stack_name)
        if stack is None:
            return False
        if stack["StackStatus"] == "ROLLBACK_COMPLETE":
            # A create that rolled back can only be deleted, never updated
            self.cloudformation.delete_stack(StackName=stack_name)
            self._wait("stack_delete_complete", stack_name)
            return False
        return True

    def _outputs(self, stack_name: str) -> Dict[str, str]:
        stack = self._describe(stack_name) or {}
        outputs = {o["OutputKey"]: o["OutputValue"] for o in stack.get("Outputs", [])}
        outputs[STATUS_OUTPUT] = provider_status(stack.get("StackStatus", "DELETE_COMPLETE"))
        return outputs

    def _wait(self, waiter_name: str, stack_name: str) -> None:
        try:
            self.cloudformation.get_waiter(waiter_name).wait(
                StackName=stack_name, WaiterConfig=self.waiter_config
            )
        except WaiterError as exc:
            reason = self._failure_reason(stack_name) or str(exc)
            raise classify_failure_reason(reason, stack_name) from exc

    def _failure_reason(self, stack_name: str) -> Optional[str]:
        try:
            events = self.cloudformation.describe_stack_events(StackName=stack_name)["StackEvents"]
        except ClientError:
            return None
        failed: List[Dict] = [
            e for e in events if e.get("ResourceStatus", "").endswith("_FAILED") and e.get("ResourceStatusReason")
        ]
        if not failed:
            return None
        # Events are newest first; the earliest failure is the root cause
        first = failed[-1]
        return f"{first.get('LogicalResourceId')}: {first['ResourceStatusReason']}"

    @contextmanager
    def _translate_errors(self, stack_name: str):
        try:
            yield
        except ClientError as exc:
            raise classify_client_error(exc, stack_name) from exc
        except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as exc:
            raise TransientProviderError(str(exc), stack=stack_name) from exc
