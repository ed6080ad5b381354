"""
Error taxonomy shared by provider clients, sync, cache and bootcamp code

Each error carries two flags:
    retryable: a later attempt may succeed without operator action
    user_facing: the API surfaces the error to the caller instead of a generic 5xx
"""


class SyncError(RuntimeError):
    retryable = False
    user_facing = False

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__name__)


class NotFound(SyncError):
    """
    Raised when the provider has no account for the requested username

    Attributes:
        provider (str): Provider label
        username (str): Username that did not resolve
    """

    user_facing = True

    def __init__(self, provider, username, message=None):
        super().__init__(message or f"{provider} user not found: {username}")
        self.provider = provider
        self.username = username


class RateLimited(SyncError):
    """
    Raised when a sync gate or an upstream rate limit refuses the call

    Attributes:
        retry_after_seconds (int): Seconds until the caller may try again
    """

    retryable = True
    user_facing = True

    def __init__(self, retry_after_seconds, message=None):
        retry_after_seconds = max(0, int(retry_after_seconds or 0))
        super().__init__(message or f"Rate limited; retry in {retry_after_seconds}s")
        self.retry_after_seconds = retry_after_seconds


class UpstreamError(SyncError):
    """
    Raised when a provider call fails for a reason other than not-found or rate limit

    Attributes:
        provider (str): Provider label
        status_code (int): HTTP status when one was received
    """

    retryable = True

    def __init__(self, provider, message=None, status_code=None):
        super().__init__(message or f"{provider} upstream error")
        self.provider = provider
        self.status_code = status_code


class CacheUnavailable(SyncError):
    retryable = True


class MissingUsername(SyncError):
    user_facing = True

    def __init__(self, subject_id, provider=None):
        label = provider or "any provider"
        super().__init__(f"Subject {subject_id} has no username for {label}")
        self.subject_id = subject_id
        self.provider = provider


class SubjectNotFound(SyncError):
    user_facing = True

    def __init__(self, subject_id):
        super().__init__(f"Subject not found: {subject_id}")
        self.subject_id = subject_id


class BootcampNotFound(SyncError):
    user_facing = True

    def __init__(self, bootcamp_id):
        super().__init__(f"Bootcamp not found: {bootcamp_id}")
        self.bootcamp_id = bootcamp_id


class NotRegistered(SyncError):
    user_facing = True

    def __init__(self, bootcamp_id, subject_id):
        super().__init__(f"Subject {subject_id} is not registered for bootcamp {bootcamp_id}")
        self.bootcamp_id = bootcamp_id
        self.subject_id = subject_id


class RegistrationClosed(SyncError):
    user_facing = True


class AlreadyRegistered(SyncError):
    user_facing = True


class InvalidTransition(SyncError):
    user_facing = True


class BaselineFetchFailed(SyncError):
    """
    Raised when registration cannot capture the participant's starting stats

    Attributes:
        cause (Exception): Provider failure that prevented the baseline
    """

    retryable = True
    user_facing = True

    def __init__(self, subject_id, cause=None):
        detail = f": {type(cause).__name__}" if cause is not None else ""
        super().__init__(f"Failed to capture baseline for subject {subject_id}{detail}")
        self.subject_id = subject_id
        self.cause = cause
