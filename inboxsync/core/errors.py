"""Error taxonomy for the connection lifecycle.

Every error carries a ``retryable`` flag. Retryable errors are left to the
job queue's bounded-attempt backoff; terminal errors fail the job on the
first occurrence so a condition that cannot self-heal is reported once
instead of hot-looping.
"""


class LifecycleError(Exception):
    """Base exception for lifecycle errors."""

    retryable: bool = False


class AccountNotFound(LifecycleError):
    """Connected account does not exist."""

    pass


class AccountNotRefreshable(LifecycleError):
    """Connected account has no refresh token."""

    pass


class NoAccessToken(LifecycleError):
    """Connected account has no usable (present, unexpired) access token."""

    pass


class MalformedNotification(LifecycleError):
    """Webhook payload could not be decoded or is missing required fields."""

    pass


class ProviderTransient(LifecycleError):
    """Upstream failure that may succeed on retry (timeout, 429, 5xx)."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTerminal(LifecycleError):
    """Revoked/invalid credential or a request Google permanently rejected."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class WatchNotConfigured(LifecycleError):
    """GMAIL_PUSH_TOPIC is not set, so no watch can be established."""

    pass


class SchedulingFailure(LifecycleError):
    """The job queue rejected an enqueue."""

    retryable = True


class AccountAlreadyConnected(LifecycleError):
    """Mailbox is already linked to this user."""

    pass


class AccountConnectedToOtherUser(LifecycleError):
    """Mailbox is already linked to a different user."""

    pass
