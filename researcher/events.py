"""
Outbound notification that a research run finished.

Follow-up work (analytics, memo refresh, UI hints) subscribes to this event
instead of being called inline by the orchestrator. The Redis implementation
appends to a capped stream; a failed publish is reported to the caller, which
only logs it.
"""

from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel, Field
from redis.exceptions import RedisError

from libs.caching.redis_client import get_redis_client
from libs.common.settings import Settings, get_settings
from researcher.errors import PublishError
from researcher.schemas.models import utcnow

logger = structlog.get_logger(__name__)

STREAM_MAXLEN = 10_000


class ResearchCompleted(BaseModel):
    """Emitted once per fresh (non-cached) research run."""

    event_type: str = "researcher.completed"
    trace_id: str
    workspace_id: str
    conversation_id: str
    triggering_message_id: str
    searched: bool
    iterations: int = 0
    memo_hit_count: int = 0
    message_hit_count: int = 0
    stop_reason: Optional[str] = None
    duration_ms: float = 0.0
    occurred_at: datetime = Field(default_factory=utcnow)


class RedisEventPublisher:
    """Appends researcher events to a Redis stream (``XADD``)."""

    def __init__(self, redis_client=None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.stream = self.settings.events_stream
        self._redis_client = redis_client

    async def publish(self, event: ResearchCompleted) -> None:
        if self._redis_client is None:
            self._redis_client = await get_redis_client()
        if self._redis_client is None:
            raise PublishError("Redis unavailable")

        try:
            entry_id = await self._redis_client.xadd(
                self.stream,
                {"type": event.event_type, "payload": event.model_dump_json()},
                maxlen=STREAM_MAXLEN,
                approximate=True,
            )
        except RedisError as e:
            raise PublishError(f"xadd to {self.stream} failed: {e}") from e

        logger.debug("Research event published", stream=self.stream, entry_id=entry_id, trace_id=event.trace_id)
