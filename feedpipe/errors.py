class InvalidOperationError(ValueError):
    """Engagement operation rejected at the buffer boundary; never buffered."""


class SchedulerAuthError(ValueError):
    pass
