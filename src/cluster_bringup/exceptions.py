"""Exception hierarchy for cluster bring-up.

Stage-level problems (timeouts, skips, cancellations) are recorded on the
StageRun and never raised. Exceptions are reserved for configuration errors
and for the adapters that talk to the outside world.
"""

from typing import Optional


class BringupError(Exception):
    """Base exception for all cluster bring-up errors."""

    def __init__(self, message: str = "", stage_id: Optional[str] = None) -> None:
        self.stage_id = stage_id
        super().__init__(message)


class PipelineConfigError(BringupError):
    """Raised when a stage graph is invalid.

    Examples: duplicate stage ids, unknown dependencies, dependency cycles,
    resuming from a stage that does not exist.
    """


class DefinitionError(BringupError):
    """Raised when a pipeline definition file cannot be loaded."""


class InvalidTransitionError(BringupError):
    """Raised when a StageRun is moved to a status it cannot reach."""


class ApplyError(BringupError):
    """Raised when an apply action fails.

    The failure may be transient (an admission webhook that is not serving
    yet); the stage executor diagnoses it before deciding.
    """

    def __init__(
        self,
        message: str = "",
        stage_id: Optional[str] = None,
        output: str = "",
    ) -> None:
        self.output = output
        super().__init__(message, stage_id)


class ApplyRejectedError(ApplyError):
    """Raised when the external system rejects the resource itself.

    Examples: schema validation failure, unknown field, unparsable manifest.
    Never retried.
    """


class QueryError(BringupError):
    """Raised when external state cannot be read."""


class SecretNotFoundError(BringupError):
    """Raised when a secret (or the requested key) never appeared."""


class OperationCancelledError(BringupError):
    """Raised when the operator cancels while an action is in progress."""
