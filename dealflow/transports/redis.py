"""Redis lists as topics, shared by workers in separate processes."""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..config import RedisConfig
from ..contracts import EngineMessage
from .base import BaseTransport

logger = logging.getLogger(__name__)

# (topic, raw json) so a nacked message can be pushed back.
RawRedis = Tuple[str, str]


class RedisTransport(BaseTransport[RawRedis]):
    """LPUSH to publish, RPOP/BRPOP to consume: one list per topic."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "dealflow",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    @classmethod
    def from_config(cls, config: RedisConfig) -> "RedisTransport":
        return cls(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            prefix=config.prefix,
        )

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    async def connect(self) -> None:
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()
        logger.info(f"Connected to Redis at {self.host}:{self.port}/{self.db}")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if self._redis is None:
            await self.connect()
        return self._redis

    async def publish(self, topic: str, message: EngineMessage) -> None:
        client = await self._client()
        await client.lpush(self._queue(topic), message.to_json())

    def _decode(
        self, topic: str, message_json: str
    ) -> Optional[Tuple[RawRedis, EngineMessage]]:
        try:
            message = EngineMessage.from_json(message_json)
        except PydanticValidationError as e:
            logger.error(f"Dropping unparseable message on {topic}: {e}")
            return None
        return (topic, message_json), message

    async def receive(self, topic: str) -> Optional[Tuple[RawRedis, EngineMessage]]:
        client = await self._client()
        while True:
            message_json = await client.rpop(self._queue(topic))
            if message_json is None:
                return None
            item = self._decode(topic, message_json)
            if item is not None:
                return item

    async def wait_for(
        self, topic: str, timeout: float
    ) -> Optional[Tuple[RawRedis, EngineMessage]]:
        if timeout <= 0:
            return await self.receive(topic)
        client = await self._client()
        # BRPOP treats 0 as "block forever"; timeout is positive here.
        result = await client.brpop(self._queue(topic), timeout=timeout)
        if not result:
            return None
        _, message_json = result
        return self._decode(topic, message_json)

    async def nack(self, raw_message: RawRedis, requeue: bool = True) -> None:
        if not requeue:
            return
        topic, message_json = raw_message
        client = await self._client()
        await client.rpush(self._queue(topic), message_json)
