import asyncio
from typing import Awaitable, Callable, Dict, List

from beliyo.core.config import get_settings
from beliyo.core.exceptions import ConnectivityError
from beliyo.core.logging import get_logger


logger = get_logger(__name__)

OnMessage = Callable[[str], Awaitable[None]]

_CLOSED = object()


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class LocalBus:
    """In-process fan-out used when no Redis is configured (single worker, tests)."""

    def __init__(self) -> None:
        self._queues: Dict[str, List[asyncio.Queue]] = {}

    async def publish(self, channel: str, message: str) -> None:
        for queue in list(self._queues.get(channel, [])):
            queue.put_nowait(message)

    async def subscribe(self, channel: str, on_message: OnMessage):
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(channel, []).append(queue)
        bus = self

        class _Sub:
            async def run(self_inner):
                while True:
                    data = await queue.get()
                    if data is _CLOSED:
                        return
                    await on_message(data)

            async def cancel(self_inner):
                bus._drop(channel, queue)
                queue.put_nowait(_CLOSED)

        return _Sub()

    def subscriber_count(self, channel: str) -> int:
        return len(self._queues.get(channel, []))

    def _drop(self, channel: str, queue: asyncio.Queue) -> None:
        queues = self._queues.get(channel)
        if not queues:
            return
        try:
            queues.remove(queue)
        except ValueError:
            pass
        if not queues:
            del self._queues[channel]

    async def close(self) -> None:
        for channel, queues in list(self._queues.items()):
            for queue in list(queues):
                queue.put_nowait(_CLOSED)
        self._queues.clear()


class RedisBus:

    def __init__(self, url: str) -> None:
        import redis.asyncio as redis

        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        from redis.exceptions import ConnectionError as RedisConnectionError

        try:
            await self._redis.publish(channel, message)
        except RedisConnectionError as exc:
            raise ConnectivityError(f"Publish to {channel} failed: {exc}") from exc

    async def subscribe(self, channel: str, on_message: OnMessage):
        from redis.exceptions import ConnectionError as RedisConnectionError

        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisConnectionError as exc:
            raise ConnectivityError(f"Subscribe to {channel} failed: {exc}") from exc

        class _Sub:
            _running = True

            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    except RedisConnectionError as exc:
                        raise ConnectivityError(f"Lost subscription to {channel}: {exc}") from exc
                    if msg and msg.get("type") == "message":
                        data = msg.get("data")
                        if isinstance(data, bytes):
                            data = data.decode("utf-8")
                        await on_message(data)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except RedisConnectionError as exc:
                    logger.debug("redis_unsubscribe_failed", channel=channel, error=str(exc))

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    if url:
        _bus = RedisBus(url)
        logger.info("realtime_bus_ready", backend="redis")
    else:
        _bus = LocalBus()
        logger.info("realtime_bus_ready", backend="local")
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
    _bus = None
