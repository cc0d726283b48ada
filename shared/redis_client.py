"""
Redis client factory and Redis Streams helpers.

The ledger hands SystemAlerts off to a Redis Stream so that alerting
consumers (paging, dashboards) can read them with consumer groups and
acknowledgment. Stream messages persist until trimmed, so no alert is lost
while consumers are offline.

The client is created by the application container and passed in
explicitly; this module keeps no module-level connection.
"""

import json
import logging
from typing import Any

import redis.asyncio as redis
from redis import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

# Redis Streams constants
ALERTS_STREAM = "system_alerts_stream"
STREAM_MAX_LEN = 10000  # Approximate trim to keep stream bounded

logger = logging.getLogger(__name__)


class RedisUnavailableError(Exception):
    """Redis could not be reached or rejected the command."""


def create_redis_client(redis_url: str) -> "redis.Redis[str]":
    """
    Create a Redis async client with production-ready configuration.

    - Connection pooling (max 20 connections shared by workers)
    - Automatic retry on timeout for transient failures
    - Health check pings every 30 seconds

    Args:
        redis_url: Connection string (REDIS_URL)

    Returns:
        Redis async client configured with connection pool and retry logic
    """
    client = redis.from_url(
        redis_url,
        max_connections=20,
        decode_responses=True,  # Automatically decode bytes to strings
        retry_on_timeout=True,  # Retry on transient network timeouts
        health_check_interval=30,  # Ping Redis every 30s to detect failures
    )

    logger.info(
        f"Redis client initialized: {redis_url} "
        f"(max_connections=20, retry_on_timeout=True, health_check_interval=30s)"
    )
    return client


async def close_redis_client(client: "redis.Redis[str]") -> None:
    """Close the Redis connection pool during shutdown."""
    try:
        await client.aclose()
        logger.info("Redis client closed")
    except RedisError as e:
        logger.warning(f"Error closing Redis client: {e}")


async def add_to_stream(
    client: "redis.Redis[str]",
    stream: str,
    message: dict[str, Any],
    max_len: int = STREAM_MAX_LEN,
) -> str:
    """
    Add a message to a Redis Stream with automatic trimming.

    Args:
        client: Redis async client
        stream: Name of the Redis Stream
        message: Message dict to add (will be JSON-serialized)
        max_len: Maximum stream length (approximate trimming for performance)

    Returns:
        Stream message ID (e.g., "1234567890123-0")

    Raises:
        RedisUnavailableError: If Redis connection fails
    """
    try:
        json_message = json.dumps(message, default=str)

        # XADD with MAXLEN ~ (approximate) for performance
        message_id = await client.xadd(
            stream,
            {"data": json_message},
            maxlen=max_len,
            approximate=True,
        )

        logger.debug(
            f"Message added to stream '{stream}': id={message_id}, "
            f"data={json_message[:100]}..."
        )
        return message_id

    except RedisConnectionError as e:
        logger.error(f"Redis connection error adding to stream '{stream}': {e}")
        raise RedisUnavailableError(f"Redis connection failed: {e}") from e

    except RedisError as e:
        logger.error(f"Redis error adding to stream '{stream}': {e}")
        raise RedisUnavailableError(str(e)) from e
