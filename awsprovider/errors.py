"""Error taxonomy for the provider controllers.

Transient errors are plain exceptions (``ApiException``, ``ClientError``)
and are left to propagate to the work queue, which retries with backoff.
Everything defined here carries meaning beyond "try again".
"""

from __future__ import annotations


# Machine API failure reasons
CREATE_MACHINE_ERROR = "CreateError"
DELETE_MACHINE_ERROR = "DeleteError"
INVALID_CONFIGURATION_ERROR = "InvalidConfiguration"


class ProviderError(Exception):
    """Base class for all provider errors."""


class TerminalError(ProviderError):
    """Error that will not resolve by retrying.

    The lifecycle reconciler records these as a failure reason/message on
    the AWSMachine status and stops acting on the object.
    """

    reason = INVALID_CONFIGURATION_ERROR


class InvalidFormatError(TerminalError, ValueError):
    """A provider identity string is not in canonical form."""


class NoEligibleSubnetError(TerminalError):
    """No subnet in the VPC satisfies the launch template filters."""


class NoEligibleSecurityGroupError(TerminalError):
    """Security group names were given but none of them resolved."""


class UnknownInstanceStateError(TerminalError):
    """The backend reported an instance state we do not know how to handle."""

    reason = DELETE_MACHINE_ERROR


class RegionNotFoundError(TerminalError):
    """No region could be determined for a machine."""


class MissingBootstrapDataError(ProviderError):
    """The bootstrap secret is missing or lacks the cloud-config key."""


class RequeueAfterError(ProviderError):
    """Expected wait: the caller should come back after ``requeue_after`` seconds."""

    def __init__(self, message: str, requeue_after: float) -> None:
        super().__init__(message)
        self.requeue_after = requeue_after


class CancelledError(ProviderError):
    """The invocation context was cancelled before the call could be made."""


class DeadlineExceededError(CancelledError):
    """The invocation context ran past its deadline."""
