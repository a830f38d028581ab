# printflow/domain/errors.py
"""
Typed errors for the pipeline.

Every error carries a stable machine readable ``code`` and a human message.
Routers turn them into HTTP responses; provider errors never leave the
service layer as raw strings.
"""


class PipelineError(Exception):
    code = "pipeline_error"
    http_status = 400

    def __init__(self, message: str | None = None, code: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        if code:
            self.code = code
        super().__init__(self.message)


class NotFound(PipelineError, LookupError):
    """Resource does not exist."""

    code = "not_found"
    http_status = 404


class AccessDenied(PipelineError, PermissionError):
    """Resource belongs to another user."""

    code = "access_denied"
    http_status = 403


# precondition violations, rejected synchronously


class PreconditionFailed(PipelineError):
    code = "precondition_failed"
    http_status = 409


class NotReady(PreconditionFailed):
    """Design session is not ready for approval."""

    code = "not_ready"


class ConsentRequired(PreconditionFailed):
    """Consent must be accepted before approval."""

    code = "consent_required"
    http_status = 422


class SelectionRequired(PreconditionFailed):
    """A product and variant must be selected before approval."""

    code = "selection_required"


class SessionAbandoned(PreconditionFailed):
    """Design session was abandoned."""

    code = "session_abandoned"


class RetryNotAllowed(PreconditionFailed):
    """Only failed sessions can be retried."""

    code = "retry_not_allowed"


class RetryLimitExceeded(PreconditionFailed):
    """Retry limit for this session has been reached."""

    code = "retry_limit_exceeded"
    http_status = 429


class ApprovalAlreadyUsed(PreconditionFailed):
    """Approval was already used for another order."""

    code = "approval_already_used"


class OrderNotPaid(PreconditionFailed):
    """Order payment has not been captured."""

    code = "order_not_paid"


class InvalidTransition(PreconditionFailed):
    """Requested status change is not allowed from the current status."""

    code = "invalid_transition"


class InvalidApprovalToken(PipelineError):
    """Approval token is invalid or expired."""

    code = "invalid_approval_token"
    http_status = 400


class WebhookVerificationError(PipelineError):
    """Webhook signature could not be verified."""

    code = "invalid_signature"
    http_status = 400


# provider errors


class ProviderError(PipelineError):
    code = "provider_error"
    http_status = 502


class TransientProviderError(ProviderError):
    """Provider is temporarily unavailable."""

    code = "provider_unavailable"
    http_status = 503


class AmbiguousOutcome(TransientProviderError):
    """Provider call timed out after the request was sent."""

    code = "provider_timeout"
    http_status = 504


class PermanentProviderError(ProviderError):
    """Provider rejected the request."""

    code = "provider_rejected"
    http_status = 422

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message, code=reason)
        self.reason = reason
