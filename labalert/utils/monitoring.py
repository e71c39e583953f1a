import functools
import logging
import time

logger = logging.getLogger(__name__)

# Endpoints slower than this are logged at warning level
SLOW_REQUEST_SECONDS = 1.0


def track_performance(func):
    """Log the duration of an async endpoint."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        start = time.perf_counter()
        try:
            return await func(*args, **kwargs)
        finally:
            elapsed = time.perf_counter() - start
            level = logging.WARNING if elapsed >= SLOW_REQUEST_SECONDS else logging.DEBUG
            logger.log(level, f"{func.__name__} took {elapsed * 1000:.1f} ms")

    return wrapper
