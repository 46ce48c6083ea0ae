"""Custom error types for offload."""


class OffloadError(Exception):
    """Base class for all offload errors."""


class OffloadConfigError(OffloadError):
    """Raised when a configuration update does not match the expected shape."""


class OffloadProtocolError(OffloadError):
    """Raised for malformed or unknown envelopes on a worker channel."""


class OffloadTransportError(OffloadError):
    """Raised when a background context fails to start or dies unexpectedly."""


class WorkerTerminatedError(OffloadTransportError):
    """Raised when a terminated worker is asked to run or receive data."""


class OffloadTaskError(OffloadError):
    """Raised when a task inside the background context reports an exception."""

    remote_type_name: str
    remote_message: str
    remote_traceback: str

    def __init__(
        self,
        remote_type_name: str,
        remote_message: str,
        remote_traceback: str = "",
    ) -> None:
        """Initialize a task error wrapper.

        :param remote_type_name: Original exception type name.
        :param remote_message: Original exception message.
        :param remote_traceback: Original traceback text.
        """
        self.remote_type_name = remote_type_name
        self.remote_message = remote_message
        self.remote_traceback = remote_traceback
        super().__init__(remote_message)

    @property
    def message(self) -> str:
        """Return the message raised inside the task.

        :returns: Original exception message.
        """
        return self.remote_message

    @property
    def stack(self) -> str:
        """Return the formatted traceback captured inside the task.

        :returns: Traceback text, possibly empty.
        """
        return self.remote_traceback
