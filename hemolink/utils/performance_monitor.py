import logging
import time
from functools import wraps

from hemolink.utils.logging_config import log_performance_metric

logger = logging.getLogger(__name__)

SLOW_CALL_SECONDS = 0.1


def performance_monitor(func):
    """Decorator to time async service calls"""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            execution_time = time.perf_counter() - start_time
            logger.error(
                f"{func.__qualname__} failed after {execution_time:.3f} seconds: {e}"
            )
            raise

        execution_time = time.perf_counter() - start_time
        if execution_time > SLOW_CALL_SECONDS:
            logger.info(f"{func.__qualname__} executed in {execution_time:.3f} seconds")
            log_performance_metric(func.__qualname__, execution_time)
        return result

    return wrapper
