"""
Exception types for the bucket digger.

Fatal errors (abort the whole run):
    ConfigError, WorkerCountError, CatalogError, and a ClientInitError raised
    while creating the default-region client.

Per-bucket errors (logged, bucket skipped or degraded):
    RegionLookupError, ClientInitError, MetricsError, CostQueryError
"""
from typing import Optional


class DiggerError(Exception):
    """Base class for every error raised by the bucket digger."""


class ConfigError(DiggerError):
    """Invalid configuration, detected before any work starts."""


class WorkerCountError(ConfigError):
    """Worker count below 1."""

    def __init__(self, workers: int):
        self.workers = workers
        super().__init__(f"'{workers}' is not a valid worker count, it must be at least 1")


class CatalogError(DiggerError):
    """The bucket listing failed; the run cannot continue with a partial catalog."""


class BucketError(DiggerError):
    """Base class for failures scoped to a single bucket.

    The original exception is kept as ``original_error`` and chained as
    ``__cause__`` by the raising code.
    """

    def __init__(self, message: str, bucket_name: str = "",
                 original_error: Optional[Exception] = None):
        self.bucket_name = bucket_name
        self.original_error = original_error
        super().__init__(message)


class ClientInitError(BucketError):
    """A region-scoped S3 client could not be created."""

    def __init__(self, message: str, region: str = "", bucket_name: str = "",
                 original_error: Optional[Exception] = None):
        self.region = region
        super().__init__(message, bucket_name=bucket_name, original_error=original_error)


class RegionLookupError(BucketError):
    """The bucket's home region could not be determined."""


class MetricsError(BucketError):
    """The bucket's object listing could not be completed."""


class CostQueryError(BucketError):
    """The Cost Explorer query for a bucket failed."""


# AWS error codes that indicate auth/permission issues
AWS_AUTH_ERROR_CODES = {
    'AccessDenied', 'AccessDeniedException', 'UnauthorizedAccess',
    'UnauthorizedOperation', 'InvalidClientTokenId', 'ExpiredToken',
    'ExpiredTokenException', 'AuthFailure', 'InvalidIdentityToken',
    'CredentialsNotFound', 'SignatureDoesNotMatch', 'InvalidAccessKeyId',
}


def is_auth_error(exc: BaseException) -> bool:
    """
    Check if an exception represents an AWS authentication/authorization error.

    Detects botocore ClientError with one of the known auth error codes, and
    botocore's NoCredentialsError.
    """
    exc_type_name = type(exc).__name__

    if exc_type_name == 'NoCredentialsError':
        return True

    if exc_type_name == 'ClientError':
        error_code = getattr(exc, 'response', {}).get('Error', {}).get('Code', '')
        return error_code in AWS_AUTH_ERROR_CODES

    return False


def describe_error(exc: BaseException) -> str:
    """Short, single-line description of an AWS error for log messages."""
    response = getattr(exc, 'response', None)
    if isinstance(response, dict):
        error = response.get('Error', {})
        code = error.get('Code')
        message = error.get('Message')
        if code and message:
            return f"{code}: {message}"
        if code:
            return str(code)
    return str(exc) or type(exc).__name__
