"""
Errors raised by usage source clients.
"""


class UsageSourceError(Exception):
    """Raised when an external usage source cannot be read.

    Covers network failures, timeouts, HTTP error statuses and payloads
    that do not have the expected shape.
    """
    def __init__(self, source: str, message: str, status_code: int = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code


class SourceNotConfiguredError(UsageSourceError):
    """Raised when a source is used without credentials."""
    def __init__(self, source: str):
        super().__init__(source, "credentials not configured")
