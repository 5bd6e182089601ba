import dataclasses
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Tuple

from tierstack.config.environments import TopologyConfig
from tierstack.errors import DependencyUnavailableError, TopologyError
from tierstack.handles import AVAILABLE, Handle

logger = logging.getLogger(__name__)

STATUS_OUTPUT = "Status"


@dataclass(frozen=True)
class Blueprint:
    """Provider-agnostic description of everything one stack owns."""

    name: str
    tags: Tuple[Tuple[str, str], ...]


def blueprint_fingerprint(blueprint: Blueprint) -> str:
    payload = {"type": type(blueprint).__name__, "body": dataclasses.asdict(blueprint)}
    encoded = json.dumps(payload, sort_keys=True, default=str).encode()
    return hashlib.sha256(encoded).hexdigest()


def split_list(value: str) -> Tuple[str, ...]:
    return tuple(item for item in value.split(",") if item)


class TopologyStack(ABC):
    """
    One independently deployable unit of the topology.

    Subclasses validate their upstream handles in ``__init__`` so that a stack
    with a missing or unavailable input can never be constructed, describe
    their resources in ``blueprint`` and map provider outputs back to the
    handle they own in ``to_handle``.
    """

    kind: str = ""
    component: str = ""

    def __init__(self, config: TopologyConfig):
        self.config = config
        self.props = config.props
        self.profile = config.profile

    @property
    def stack_name(self) -> str:
        return self.props.resource_name(self.kind)

    def tags(self) -> Tuple[Tuple[str, str], ...]:
        return (
            ("Project", self.props.project_name),
            ("Environment", self.props.environment),
            ("Component", self.component or self.kind.title()),
            ("ManagedBy", "tierstack"),
        )

    @abstractmethod
    def blueprint(self, provider) -> Blueprint:
        ...

    @abstractmethod
    def to_handle(self, blueprint: Blueprint, outputs: Mapping[str, str]) -> Handle:
        ...

    def provision(self, provider) -> Handle:
        """Deploy this stack on ``provider`` and return the handle it owns."""
        _, handle = self.realize(provider, self.blueprint(provider))
        logger.info("Stack provisioned", extra={"stack": self.stack_name, "status": handle.status})
        return handle

    def realize(self, provider, blueprint: Blueprint) -> Tuple[Mapping[str, str], Handle]:
        """Deploy an already built blueprint; errors are attributed to this stack."""
        try:
            outputs = provider.deploy(self.stack_name, blueprint)
            return outputs, self.to_handle(blueprint, outputs)
        except TopologyError as exc:
            attributed = exc.for_stack(self.stack_name)
            if attributed is exc:
                raise
            raise attributed from exc

    # ---------- outputs ----------
    def output(self, outputs: Mapping[str, str], key: str) -> str:
        value = outputs.get(key)
        if value is None or value == "":
            raise DependencyUnavailableError(
                "provider returned no value for this output", stack=self.stack_name, field=key
            )
        return value

    def status_of(self, outputs: Mapping[str, str]) -> str:
        return outputs.get(STATUS_OUTPUT, AVAILABLE)
