from typing import Optional


class TopologyError(Exception):
    """Base error for anything that stops a stack from being provisioned."""

    retryable = False

    def __init__(self, message: str, stack: Optional[str] = None, field: Optional[str] = None):
        self.message = message
        self.stack = stack
        self.field = field
        super().__init__(self._describe())

    def _describe(self) -> str:
        parts = []
        if self.stack:
            parts.append(f"[{self.stack}]")
        if self.field:
            parts.append(f"{self.field}:")
        parts.append(self.message)
        return " ".join(parts)

    def for_stack(self, stack: str) -> "TopologyError":
        """Return the same error attributed to ``stack`` when it has no owner yet."""
        if self.stack:
            return self
        return type(self)(self.message, stack=stack, field=self.field)


class ConfigurationError(TopologyError):
    """Missing or invalid input. Never retried."""


class CapacityError(TopologyError):
    """Not enough zones or quota in the target region."""


class DependencyUnavailableError(TopologyError):
    """An upstream handle is missing or its resource is not available."""


class TransientProviderError(TopologyError):
    """Throttling or a transient failure talking to the provisioning backend."""

    retryable = True


class PipelineError(Exception):
    """Raised by the orchestrator once a run has stopped on a stack failure."""

    def __init__(self, report, cause: TopologyError):
        self.report = report
        self.cause = cause
        super().__init__(f"{report.action} stopped: {cause}")
