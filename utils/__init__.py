"""Utils package for the mailbox filler."""
from .logging_utils import (
    setup_logging,
    retry_with_backoff,
    async_retry_with_backoff,
    JsonFormatter,
)

__all__ = [
    'setup_logging',
    'retry_with_backoff',
    'async_retry_with_backoff',
    'JsonFormatter',
]
