from functools import wraps
from typing import Callable, Iterable

from taskboard.cache.layer import cache_layer


def async_cached(key_builder: Callable[..., str], l2_ttl: int = None):
    """
    Decorator for async functions. key_builder receives same args/kwargs.
    Example:
      @async_cached(lambda task_id, *_, **__: f"task:{task_id}")
      async def get_task(task_id, db): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            key = key_builder(*args, **kwargs)

            async def loader():
                value = await fn(*args, **kwargs)
                if value is None:
                    return None
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json")
                return value

            return await cache_layer.get(key, loader=loader, l2_ttl=l2_ttl)

        return wrapper

    return decorator


def async_cached_expire(keys_builder: Callable[..., str | Iterable[str]]):
    """Drop the key(s) built from the call arguments once the write returns."""

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            keys = keys_builder(*args, **kwargs)
            if isinstance(keys, str):
                keys = [keys]
            result = await fn(*args, **kwargs)
            await cache_layer.delete_many(keys)
            return result

        return wrapper

    return decorator
