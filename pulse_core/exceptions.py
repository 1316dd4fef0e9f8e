"""
Exception hierarchy for the consolidation service.

Every failure that can happen while talking to an upstream source is a
DataSourceError. The ``retryable`` flag is read by the retry combinator in
error_handling so that parse and configuration problems are never retried.
"""
from typing import List, Optional


class DataSourceError(Exception):
    """Base exception for all data source related errors"""

    retryable = False
    kind = "data_source_error"

    def __init__(self, message: str, source_id: str = None, endpoint: str = None):
        super().__init__(message)
        self.message = message
        self.source_id = source_id
        self.endpoint = endpoint

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "source": self.source_id,
            "endpoint": self.endpoint,
            "retryable": self.retryable,
        }


class NetworkError(DataSourceError):
    """Raised when the upstream call fails at the transport or HTTP level"""

    kind = "network_error"

    def __init__(
        self,
        message: str,
        source_id: str = None,
        endpoint: str = None,
        status_code: Optional[int] = None,
        timed_out: bool = False,
        retryable: bool = True,
    ):
        super().__init__(message, source_id=source_id, endpoint=endpoint)
        self.status_code = status_code
        self.timed_out = timed_out
        self.retryable = retryable

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["timed_out"] = self.timed_out
        return data


class RateLimitedError(DataSourceError):
    """Raised when a request cannot be admitted by the source's rate limit gate"""

    retryable = True
    kind = "rate_limited"

    def __init__(self, source_id: str, retry_after: Optional[float] = None, reason: str = None, endpoint: str = None):
        message = f"Rate limit exceeded for {source_id}"
        if reason:
            message += f": {reason}"
        if retry_after:
            message += f" (retry after {retry_after:.1f}s)"
        super().__init__(message, source_id=source_id, endpoint=endpoint)
        self.retry_after = retry_after


class ParseError(DataSourceError):
    """Raised when a payload cannot be decoded into its expected shape"""

    kind = "parse_error"


class SourceDisabledError(DataSourceError):
    """Raised when a fetch targets a source that is currently disabled"""

    kind = "source_disabled"

    def __init__(self, source_id: str, endpoint: str = None):
        super().__init__(f"Source is disabled: {source_id}", source_id=source_id, endpoint=endpoint)


class UnknownSourceError(DataSourceError):
    """Raised when a source or endpoint id is not in the registry"""

    kind = "unknown_source"


class UnknownAreaError(DataSourceError):
    """Raised when an area key is not part of the snapshot"""

    kind = "unknown_area"

    def __init__(self, area: str):
        super().__init__(f"Unknown area: {area}")
        self.area = area


class ConsolidationPartialFailure(DataSourceError):
    """Some areas could not be refreshed; carries the affected area keys"""

    kind = "partial_failure"

    def __init__(self, areas: List[str]):
        super().__init__(f"Consolidation incomplete for areas: {', '.join(sorted(areas))}")
        self.areas = list(areas)


class ConfigurationError(DataSourceError):
    """Raised when service configuration is invalid"""

    kind = "configuration_error"

    def __init__(self, config_field: str, reason: str, source_id: str = None):
        message = f"Configuration error in {config_field}: {reason}"
        super().__init__(message, source_id=source_id)
        self.config_field = config_field
        self.reason = reason


class SnapshotSchemaError(DataSourceError):
    """Raised when a persisted blob does not match the current schema version"""

    kind = "snapshot_schema_error"

    def __init__(self, key: str, found_version=None, expected_version=None):
        message = f"Incompatible persisted blob at {key}: schema {found_version!r}, expected {expected_version!r}"
        super().__init__(message)
        self.key = key
        self.found_version = found_version
        self.expected_version = expected_version
