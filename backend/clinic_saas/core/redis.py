"""Redis connection configuration."""

import redis.asyncio as redis

from clinic_saas.core.config import settings

redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
