# app/db/redis_client.py
import redis.asyncio as redis

from app.core.config import settings

# Shared for the app lifetime; closed in the FastAPI lifespan
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
