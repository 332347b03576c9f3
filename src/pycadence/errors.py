"""Error taxonomy for the campaign engine.

Errors split along the line the engine cares about: is the failure
scoped to a single recipient (recorded and isolated) or to a whole run
(deferred with a bounded retry budget)?

Recipient scope:
    RenderError, TransportError - recorded as FAILED in the ledger,
    the run continues.

Run scope:
    RecipientResolutionError - directory unavailable, run deferred.
    PersistenceError (pycadence.storage.base) - ledger/store write failed,
    run aborted and safely resumable.

Not failures:
    ClaimConflictError - lost a compare-and-set race, silently skipped.

Rejected up front:
    ValidationError - malformed definition, never persisted as runnable.
    InvalidTransitionError - admin operation not allowed in current state.

This module has no internal dependencies so that models can import it.
"""

from __future__ import annotations


class CadenceError(Exception):
    """Base class for all engine errors."""

    pass


class RetryableError(Exception):
    """
    Base class for errors that can specify whether they should be retried.

    Example:
        class ProviderThrottled(RetryableError):
            def is_retryable(self) -> bool:
                return True

        class AddressRejected(RetryableError):
            def is_retryable(self) -> bool:
                return False
    """

    def is_retryable(self) -> bool:
        """
        Returns True if this error is transient and the operation should be retried.

        - True: transient (network timeout, provider unavailable). Workflow
          actions stay on the same node and are re-attempted later.
        - False: permanent (bad template, address rejected). The attempt is
          recorded as failed and the workflow moves on.

        Returns:
            True if retryable, False if permanent
        """
        # Default: all errors are retryable (safe default)
        return True


class ValidationError(CadenceError, ValueError):
    """A definition is malformed and was rejected at creation time."""

    pass


class InvalidTransitionError(CadenceError):
    """An operation asked for a status transition the state machine forbids."""

    def __init__(self, entity: str, current: object, requested: object):
        super().__init__(f"{entity}: cannot transition from {current} to {requested}")
        self.entity = entity
        self.current = current
        self.requested = requested


class ClaimConflictError(CadenceError):
    """Another worker won the compare-and-set race for this record.

    Not a failure: callers treat it as a no-op.
    """

    pass


class RecipientResolutionError(CadenceError, RetryableError):
    """The recipient directory could not be queried."""

    pass


class RenderError(CadenceError, RetryableError):
    """Content rendering failed for one recipient.

    Permanent by default: re-rendering the same template with the same
    attributes is expected to fail the same way.
    """

    def __init__(self, message: str, is_retryable: bool = False):
        super().__init__(message)
        self._retryable = is_retryable

    def is_retryable(self) -> bool:
        return self._retryable


class TransportError(CadenceError, RetryableError):
    """The outbound transport failed or rejected a message."""

    def __init__(self, message: str, is_retryable: bool = True):
        super().__init__(message)
        self._retryable = is_retryable

    def is_retryable(self) -> bool:
        return self._retryable
