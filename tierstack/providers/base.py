from abc import ABC, abstractmethod
from typing import Mapping, Optional, Sequence

from tierstack.stacks.base import Blueprint


class Provider(ABC):
    """
    Backend that materializes blueprints.

    ``deploy`` is atomic: it either returns the outputs of a fully
    provisioned stack or raises a TopologyError and leaves nothing new
    behind. Calling it again with an unchanged blueprint is an update that
    changes nothing.
    """

    name = "provider"

    @abstractmethod
    def availability_zones(self, region: str) -> Sequence[str]:
        ...

    @abstractmethod
    def deploy(self, stack_name: str, blueprint: Blueprint) -> Mapping[str, str]:
        ...

    @abstractmethod
    def destroy(self, stack_name: str) -> None:
        ...

    @abstractmethod
    def status(self, stack_name: str) -> Optional[str]:
        """Provider state of a stack, ``available`` when usable, None when absent."""
