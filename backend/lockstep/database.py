import redis.asyncio as redis

from lockstep.config import settings

# Connections are opened lazily on first command
redis_client = redis.from_url(settings.redis_url, decode_responses=True)
