"""
Request routing at the edge of a distribution.

Path patterns follow edge-cache conventions: ``*`` matches any run of
characters (slashes included) and ``?`` matches exactly one. Non-default
behaviors are evaluated in the order they were declared; the catch-all
pattern applies last.

A ``forward`` behavior sends every request to origin and never touches the
cache, even if an older policy version left an entry for the same path.
"""
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Dict, MutableMapping, Optional, Tuple

from tierstack.config.environments import FORWARD, PathBehavior, PathPolicy

EDGE = "edge"
ORIGIN = "origin"


@lru_cache(maxsize=256)
def _compile(pattern: str) -> "re.Pattern[str]":
    regex = "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch) for ch in pattern
    )
    return re.compile(f"^{regex}$")


def pattern_matches(pattern: str, path: str) -> bool:
    return bool(_compile(pattern).match(path))


@dataclass(frozen=True)
class EdgeResponse:
    path: str
    body: str
    served_from: str
    behavior: PathBehavior


class EdgeRouter:
    def __init__(
        self,
        policy: PathPolicy,
        origin: Callable[[str], str],
        cache: Optional[MutableMapping[Tuple[int, str], str]] = None,
    ):
        self.policy = policy.validate()
        self.origin = origin
        self.cache: MutableMapping[Tuple[int, str], str] = {} if cache is None else cache

    def behavior_for(self, path: str) -> PathBehavior:
        for behavior in self.policy.additional:
            if pattern_matches(behavior.pattern, path):
                return behavior
        return self.policy.default

    def get(self, path: str) -> EdgeResponse:
        behavior = self.behavior_for(path)
        if behavior.mode == FORWARD:
            return EdgeResponse(path, self.origin(path), ORIGIN, behavior)

        key = (self.policy.version, path)
        if key in self.cache:
            return EdgeResponse(path, self.cache[key], EDGE, behavior)
        body = self.origin(path)
        self.cache[key] = body
        return EdgeResponse(path, body, ORIGIN, behavior)

    def with_policy(self, policy: PathPolicy) -> "EdgeRouter":
        """Roll out a new policy version on the same edge cache."""
        return EdgeRouter(policy, self.origin, cache=self.cache)

    def cached_paths(self) -> Dict[str, int]:
        return {path: version for version, path in self.cache}
