class DatabaseError(Exception):
    """Custom exception for database-related errors."""

    def __init__(self, message: str, error_code: str = "DB_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class RecurrenceRuleParseError(Exception):
    """A recurrence rule value could not be parsed."""

    def __init__(self, message: str, error_code: str = "RRULE_PARSE_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class BatchWriteError(Exception):
    """A batch of activity instances could not be committed."""

    def __init__(
        self,
        message: str,
        committed_count: int = 0,
        error_code: str = "BATCH_WRITE_ERROR",
    ):
        super().__init__(message)
        self.message = message
        self.committed_count = committed_count
        self.error_code = error_code


class ChannelTransportError(Exception):
    """Custom exception for delivery failures reported by a channel transport."""

    def __init__(self, message: str, error_code: str = "CHANNEL_TRANSPORT_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class InvalidTargetError(ChannelTransportError):
    """The delivery target (push token, chat id) is permanently undeliverable."""

    def __init__(self, message: str, error_code: str = "INVALID_TARGET"):
        super().__init__(message, error_code)
