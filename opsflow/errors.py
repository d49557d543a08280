"""Error taxonomy shared by the workflow, campaign and sync services."""

from __future__ import annotations

from typing import Any, Dict, Optional


class OpsflowError(Exception):
    """Base class for all engine errors.

    ``context`` carries whatever an operator needs to replay the failed unit
    by hand (entity id, attempt count, last error).
    """

    code = "opsflow_error"
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.context}


class NotFound(OpsflowError):
    code = "not_found"


class InvalidPayload(OpsflowError):
    code = "invalid_payload"


class InvalidAction(OpsflowError):
    code = "invalid_action"


class InvalidSignature(OpsflowError):
    code = "invalid_signature"


class InvalidDefinition(OpsflowError):
    code = "invalid_definition"


class ConcurrencyConflict(OpsflowError):
    """A compare-and-set write lost against a concurrent writer."""

    code = "concurrency_conflict"


class TransientCollaboratorFailure(OpsflowError):
    """An external collaborator failed in a way worth retrying."""

    code = "transient_failure"
    retryable = True

    def __init__(
        self, message: str, retry_after: Optional[float] = None, **context: Any
    ) -> None:
        super().__init__(message, **context)
        self.retry_after = retry_after


class AuthExpired(TransientCollaboratorFailure):
    code = "auth_expired"


class CollaboratorRequestError(OpsflowError):
    """The collaborator rejected the request; retrying will not help."""

    code = "collaborator_rejected"


class UnrecoverableStepFailure(OpsflowError):
    code = "unrecoverable_step_failure"


class NoMatchingBranch(OpsflowError):
    code = "no_matching_branch"


class StepLimitExceeded(OpsflowError):
    code = "step_limit_exceeded"
