class JobctlError(Exception):
    pass


class JobValidationError(JobctlError):
    pass


class JobNotFoundError(JobctlError):
    pass


class QueuedJobNotFoundError(JobctlError):
    pass


class InvalidStateError(JobctlError):
    pass


class QueueDrainingError(JobctlError):
    pass


class ExecutionNotFoundError(JobctlError):
    pass


class ExecutionStateError(JobctlError):
    pass


class DeadLetterNotFoundError(JobctlError):
    pass


class DeadLetterRetryError(JobctlError):
    pass


class DatabaseError(JobctlError):
    pass


class ConfigurationError(JobctlError):
    pass


class JobTimeoutError(JobctlError):
    """Raised by a job handler that gave up because it ran past its deadline."""


class NotificationError(JobctlError):
    pass
