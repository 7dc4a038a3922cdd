"""
Remote mirror connectors.

A mirror holds one document per slice key, shaped ``{"value": <json>}``.
``subscribe`` registers a listener for remote changes (including the first
read when a document exists) and ``push`` writes a value, best effort.
Neither ever raises into slice code: failures are logged and the slice keeps
working from its local store.
"""
import asyncio
import copy
import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import redis.asyncio as aioredis
from redis.exceptions import AuthenticationError, RedisError

logger = logging.getLogger(__name__)

OnChange = Callable[[Any], None]
Unsubscribe = Callable[[], None]

CONNECTED = "connected"
NO_BACKEND = "no-backend"
OFFLINE = "offline"
PERMISSION_DENIED = "permission-denied"
UNKNOWN = "unknown"


class RemoteMirror:
    # False only for the local-only mirror; slices skip scheduling pushes then
    configured = True

    def __init__(self):
        self.status = UNKNOWN

    @property
    def available(self) -> bool:
        return self.status == CONNECTED

    def subscribe(self, key: str, on_change: OnChange) -> Unsubscribe:
        raise NotImplementedError

    async def push(self, key: str, value: Any) -> bool:
        """Write ``value`` for ``key``; returns False when the write did not happen."""
        raise NotImplementedError

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass


class NullMirror(RemoteMirror):
    """No remote backend: subscriptions never fire and pushes do nothing."""

    configured = False

    def __init__(self):
        super().__init__()
        self.status = NO_BACKEND

    def subscribe(self, key: str, on_change: OnChange) -> Unsubscribe:
        return lambda: None

    async def push(self, key: str, value: Any) -> bool:
        logger.debug("No remote backend configured; %s kept local", key)
        return False


class MemoryMirror(RemoteMirror):
    """In-process document store shared by several registries.

    Changes reach every subscriber of a key, the writer included, on a later
    turn of the event loop and in write order.
    """

    def __init__(self):
        super().__init__()
        self.status = CONNECTED
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._listeners: Dict[str, List[OnChange]] = defaultdict(list)
        self.pushes: List[Tuple[str, Any]] = []

    def document(self, key: str) -> Optional[Dict[str, Any]]:
        doc = self._docs.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def subscribe(self, key: str, on_change: OnChange) -> Unsubscribe:
        self._listeners[key].append(on_change)
        if key in self._docs:
            self._deliver(on_change, self._docs[key]["value"])

        def unsubscribe() -> None:
            if on_change in self._listeners[key]:
                self._listeners[key].remove(on_change)

        return unsubscribe

    async def push(self, key: str, value: Any) -> bool:
        await asyncio.sleep(0)
        self.pushes.append((key, copy.deepcopy(value)))
        self.write(key, value)
        return True

    def write(self, key: str, value: Any) -> None:
        """Store ``value`` and fan it out; also used to play another client's write."""
        self._docs[key] = {"value": copy.deepcopy(value)}
        for listener in list(self._listeners[key]):
            self._deliver(listener, value)

    def _deliver(self, listener: OnChange, value: Any) -> None:
        payload = copy.deepcopy(value)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            listener(payload)
            return
        loop.call_soon(listener, payload)


class RedisMirror(RemoteMirror):
    """Mirror backed by Redis: a string key per document plus a pub/sub channel."""

    def __init__(self, url: str, collection: str = "app_data", client: Optional[Any] = None):
        super().__init__()
        self.url = url
        self.collection = collection
        self.status = OFFLINE
        self._client = client
        self._pubsub: Optional[Any] = None
        self._listen_task: Optional[asyncio.Task] = None
        self._attached: set = set()
        # attach tasks started from subscribe(); held until they finish
        self._attaching: Set[asyncio.Task] = set()
        self._listeners: Dict[str, List[OnChange]] = defaultdict(list)

    def _doc_key(self, key: str) -> str:
        return f"{self.collection}:{key}"

    def _key_from_channel(self, channel: str) -> str:
        return channel[len(self.collection) + 1:]

    async def connect(self) -> None:
        try:
            if self._client is None:
                self._client = aioredis.from_url(self.url, decode_responses=True)
            await self._client.ping()
        except AuthenticationError as e:
            self.status = PERMISSION_DENIED
            logger.warning("Remote mirror permission denied, running local-only: %s", e)
            return
        except (RedisError, OSError) as e:
            self.status = OFFLINE
            logger.warning("Remote mirror unavailable, running local-only: %s", e)
            return

        self.status = CONNECTED
        self._pubsub = self._client.pubsub()
        logger.info("Remote mirror connected: %s", self.url)
        for key in list(self._listeners):
            await self._attach(key)

    async def close(self) -> None:
        for task in list(self._attaching):
            task.cancel()
        if self._attaching:
            await asyncio.gather(*self._attaching, return_exceptions=True)
        if self._listen_task:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        if self._pubsub is not None:
            await self._pubsub.aclose()
            self._pubsub = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._attached.clear()
        self.status = OFFLINE

    def subscribe(self, key: str, on_change: OnChange) -> Unsubscribe:
        self._listeners[key].append(on_change)
        if self.available and key not in self._attached:
            try:
                task = asyncio.get_running_loop().create_task(self._attach(key))
            except RuntimeError:
                # attached on the next connect()
                pass
            else:
                self._attaching.add(task)
                task.add_done_callback(self._attaching.discard)

        def unsubscribe() -> None:
            if on_change in self._listeners[key]:
                self._listeners[key].remove(on_change)

        return unsubscribe

    async def push(self, key: str, value: Any) -> bool:
        if not self.available:
            logger.debug("Remote mirror %s; push of %s skipped", self.status, key)
            return False
        doc = json.dumps({"value": value}, sort_keys=True)
        try:
            await self._client.set(self._doc_key(key), doc)
            await self._client.publish(self._doc_key(key), doc)
        except AuthenticationError as e:
            self.status = PERMISSION_DENIED
            logger.error("Cloud save error %s: %s", key, e)
            return False
        except (RedisError, OSError) as e:
            logger.error("Cloud save error %s: %s", key, e)
            return False
        return True

    async def _attach(self, key: str) -> None:
        if key in self._attached or self._pubsub is None:
            return
        self._attached.add(key)
        try:
            await self._pubsub.subscribe(self._doc_key(key))
            raw = await self._client.get(self._doc_key(key))
        except (RedisError, OSError) as e:
            self._attached.discard(key)
            logger.error("Sync error for %s: %s", key, e)
            return

        if self._listen_task is None or self._listen_task.done():
            self._listen_task = asyncio.create_task(self._listen(), name="redis-mirror-listen")

        if raw is None:
            logger.info("Document %s does not exist on the remote yet", key)
            return
        self._dispatch(key, raw)

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message["type"] != "message":
                    continue
                self._dispatch(self._key_from_channel(message["channel"]), message["data"])
        except asyncio.CancelledError:
            raise
        except (RedisError, OSError) as e:
            self.status = OFFLINE
            logger.error("Remote mirror subscription lost: %s", e)

    def _dispatch(self, key: str, raw: str) -> None:
        try:
            doc = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed document for %s", key)
            return
        if not isinstance(doc, dict) or "value" not in doc:
            return
        for listener in list(self._listeners.get(key, ())):
            listener(doc["value"])
