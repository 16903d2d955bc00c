"""
Redis connection management.
Builds redis.asyncio clients from the supported connection option forms.
"""

import logging
from collections.abc import Callable, Mapping
from typing import Any

from redis.asyncio import Redis

from jobqueue.config import get_settings

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], Redis]
ConnectionOptions = str | Mapping[str, Any] | ClientFactory | None


def client_factory(options: ConnectionOptions = None) -> ClientFactory:
    """
    Turn connection options into a factory of independent clients.

    The queue opens several clients (commands, subscribe channel, one per
    worker type), so it needs a way to create new ones rather than a single
    client.

    Args:
        options: A redis URL, a mapping of `host`, `port`, `db`, `password`
            (other keys are passed to `Redis`), a zero-argument callable
            returning a client, or None to use the configured `redis_url`.

    Returns:
        A callable returning a new client with `decode_responses=True`.
    """
    if callable(options):
        return options

    if options is None:
        options = get_settings().redis_url

    if isinstance(options, str):
        url = options

        def from_url() -> Redis:
            return Redis.from_url(url, decode_responses=True)

        return from_url

    kwargs = dict(options)
    kwargs.setdefault("host", "localhost")
    kwargs.setdefault("port", 6379)
    kwargs["decode_responses"] = True

    def from_kwargs() -> Redis:
        return Redis(**kwargs)

    return from_kwargs


async def close_client(client: Redis) -> None:
    """Close a client and release its connection pool."""
    await client.aclose()
    logger.debug("Redis client closed")
