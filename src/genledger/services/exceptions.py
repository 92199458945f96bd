"""Service error hierarchy for provider calls, job reconciliation and the credit ledger.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (validation, authentication)
- Domain errors raised by the ledger and the job store
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (5xx)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Invalid request parameters (400, 422)
    - Authentication failures (401, 403)
    """

    pass


# Provider-specific errors
class RateLimitedError(TransientError):
    """Provider rejected the call with 429."""

    pass


class ProviderUnavailableError(TransientError):
    """Network failure, timeout, 5xx or provider account out of funds."""

    pass


class InvalidRequestError(PermanentError):
    """Provider rejected the request as invalid (4xx)."""

    pass


# Ledger and job store errors
class InsufficientCreditError(ServiceError):
    """Available balance does not cover the requested hold."""

    def __init__(self, owner_id: str, requested: int):
        super().__init__(f"Insufficient credit for {owner_id}: requested {requested}")
        self.owner_id = owner_id
        self.requested = requested


class LedgerInvariantError(ServiceError):
    """A ledger operation would break balance or hold accounting.

    This is a programming error: the operation is aborted, never clamped.
    """

    pass


class StaleTransitionError(ServiceError):
    """Persisted job state no longer matches the expected prior state.

    Another reconciler won the race; re-fetch the job before acting again.
    """

    def __init__(self, job_id, expected_state):
        super().__init__(f"Job {job_id} is no longer in state {expected_state}")
        self.job_id = job_id
        self.expected_state = expected_state


class JobNotFoundError(ServiceError):
    """Generation job does not exist."""

    pass
