from tierstack.providers.base import Provider
from tierstack.providers.memory import InMemoryProvider

__all__ = ["InMemoryProvider", "Provider"]
