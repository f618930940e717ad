"""
Core utilities and configuration for the ERP sync backend.

This package provides foundational components used throughout the sync jobs:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Custom exception hierarchy with stable error kinds
    logging: Logging configuration
    clock: UTC timestamps and the monotonic clock used for token expiry

Usage:
    from core.config import settings
    from core.database import get_session
    from core.exceptions import RemoteQueryError, UpsertError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Get database session
    async with async_session_maker() as session:
        # Perform database operations
        pass
"""

__all__ = [
    "settings",
    "get_session",
    "setup_logging",
    "utcnow",
    # Exceptions
    "ETLException",
    "ExtractionError",
    "RemoteQueryError",
    "RemoteAuthenticationError",
    "ScriptEndpointError",
    "RateLimitError",
    "NetworkError",
    "ExportNotFoundError",
    "TransformationError",
    "MalformedRemoteDataError",
    "InvalidManifestError",
    "EmptyExportError",
    "MissingScopeError",
    "LoadError",
    "DatabaseError",
    "UpsertError",
    "CheckpointError",
    "AdminAuthorizationError",
    "InvalidRequestError",
    "RetryableError",
    "NonRetryableError",
]
