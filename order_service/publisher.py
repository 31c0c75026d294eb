"""
Order Service — イベント発行

ドメインイベントを Redis Pub/Sub の order_events チャネルへ発行する。

発行は fire-and-forget: Redis の障害で注文処理を止めてはいけないので、
失敗はログに残して呼び出し元には伝えない。応答しない Redis で処理が
止まらないよう、発行は timeout 秒で打ち切る。
"""

import asyncio
import json
import logging
from typing import Any, Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from . import config

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def publish(self, event_type: str, payload: BaseModel | dict[str, Any]) -> None:
        ...


class RedisEventPublisher:
    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str = config.EVENT_CHANNEL,
        timeout: float = config.EVENT_PUBLISH_TIMEOUT_SECONDS,
    ):
        self.redis = redis
        self.channel = channel
        self.timeout = timeout

    async def publish(self, event_type: str, payload: BaseModel | dict[str, Any]) -> None:
        data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else payload
        try:
            await asyncio.wait_for(
                self.redis.publish(
                    self.channel,
                    json.dumps({"event_type": event_type, "data": data}, default=str),
                ),
                timeout=self.timeout,
            )
        except (RedisError, OSError, asyncio.TimeoutError):
            logger.exception("Failed to publish event %s", event_type)
            return
        logger.debug("Published event %s", event_type)
