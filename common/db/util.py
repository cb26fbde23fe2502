import asyncio
import logging
from redis.exceptions import ConnectionError, TimeoutError, RedisError, WatchError
from redis.sentinel import MasterNotFoundError

from common.errors import DBError


async def retry_db_call(func, *args, retries=5, delay=0.5, **kwargs):
    """Retry a single Redis call on transient errors; a WatchError belongs to the caller's transaction."""
    for attempt in range(1, retries + 1):
        try:
            return await func(*args, **kwargs)
        except WatchError:
            raise
        except (MasterNotFoundError, ConnectionError, TimeoutError, RedisError) as e:
            name = getattr(func, "__name__", "redis call")
            if attempt == retries:
                logging.error(f"{name} failed after {retries} attempts: {type(e).__name__}: {e}")
                raise DBError(str(e)) from e
            logging.warning(f"{name} attempt {attempt} failed ({type(e).__name__}: {e}), retrying in {delay}s")
            await asyncio.sleep(delay)
