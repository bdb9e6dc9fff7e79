"""
Error taxonomy shared by the fetch, parse, extract and store layers.

Primitives raise these; the scheduler turns them into recorded state.
"""
from enum import Enum
from typing import Optional


class TermfeedError(Exception):
    pass


class ConfigError(TermfeedError):
    pass


class NetworkErrorKind(str, Enum):
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    HTTP_STATUS = "http_status"


class NetworkError(TermfeedError):
    def __init__(self, kind: NetworkErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    def __str__(self) -> str:
        if self.kind == NetworkErrorKind.HTTP_STATUS:
            return f"HTTP {self.status_code}"
        return f"{self.kind.value}: {self.args[0]}"


class FeedParseError(TermfeedError):
    pass


class ExtractionErrorKind(str, Enum):
    NO_CONTENT = "no_content"
    MALFORMED = "malformed"
    TRAVERSAL_LIMIT = "traversal_limit"


class ExtractionError(TermfeedError):
    def __init__(self, kind: ExtractionErrorKind, message: str):
        super().__init__(message)
        self.kind = kind


class StoreErrorKind(str, Enum):
    WRITE_CONFLICT = "write_conflict"
    IO_ERROR = "io_error"


class StoreError(TermfeedError):
    def __init__(self, kind: StoreErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
