# tokenflow/core/exceptions.py

class TokenflowError(Exception):
    """Base exception for all application errors"""
    pass

class ServiceError(TokenflowError):
    """Base exception for service layer errors"""
    pass

class RepositoryError(TokenflowError):
    """Base exception for repository layer errors"""
    pass

class ValidationError(TokenflowError):
    """Base exception for validation errors"""
    pass

class ConfigurationError(TokenflowError):
    """Base exception for configuration errors"""
    pass

class AdapterError(TokenflowError):
    """Base exception for upstream API adapter errors"""

    def __init__(self, message: str, status: int | None = None, retry_after: float | None = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after

class StreamError(AdapterError):
    """Push feed could not be subscribed or lost its connection for good"""
    pass

class BackfillError(ServiceError):
    """A single mint's backfill run was abandoned"""

    def __init__(self, mint: str, pages: int, cause: Exception):
        super().__init__(f"Backfill of {mint} aborted after {pages} pages: {cause}")
        self.mint = mint
        self.pages = pages
        self.cause = cause
