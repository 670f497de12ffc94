"""
Key-value store adapters.

All cross-request state (sessions, state tokens, clicks, conversions, daily
aggregates and the distributed cache tier) lives behind the
``KeyValueStore`` protocol. Two implementations are provided:

- ``RestKeyValueStore`` talks to a managed Redis through the Upstash /
  Vercel KV REST protocol using httpx.
- ``MemoryKeyValueStore`` keeps everything in process memory with per-key
  expiry; it backs the tests and single-process development.

Values passed to ``set`` are stored as JSON and decoded again by ``get``.
List and hash operations store plain strings.
"""

import json
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Union, runtime_checkable

import httpx

from .config import KVConfig
from .exceptions import StoreError


@runtime_checkable
class KeyValueStore(Protocol):
    """Access contract for the shared key-value store."""

    async def get(self, key: str) -> Any:
        ...

    async def set(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        ...

    async def delete(self, key: str) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def incr(self, key: str) -> int:
        ...

    async def incrbyfloat(self, key: str, amount: float) -> float:
        ...

    async def lpush(self, key: str, *values: str) -> int:
        ...

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        ...

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        ...

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        ...

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        ...

    async def hgetall(self, key: str) -> dict[str, str]:
        ...

    async def expire(self, key: str, seconds: int) -> bool:
        ...

    async def ttl(self, key: str) -> int:
        ...


def _decode(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw


@dataclass
class _Slot:
    value: Any
    expires_at: Optional[float] = None


class MemoryKeyValueStore:
    """
    Process-local key-value store with Redis-like semantics.

    Expired keys are dropped lazily on access. The clock is injectable so
    TTL behaviour can be tested without waiting.
    """

    def __init__(self, now_fn: Optional[Callable[[], float]] = None) -> None:
        self._now = now_fn or time.time
        self._data: dict[str, _Slot] = {}

    def _live(self, key: str) -> Optional[_Slot]:
        slot = self._data.get(key)
        if slot is None:
            return None
        if slot.expires_at is not None and self._now() >= slot.expires_at:
            del self._data[key]
            return None
        return slot

    def keys(self) -> list[str]:
        """Return all live keys (test helper)."""
        return [key for key in list(self._data) if self._live(key) is not None]

    async def get(self, key: str) -> Any:
        slot = self._live(key)
        if slot is None:
            return None
        if not isinstance(slot.value, str):
            raise StoreError(code="wrong_type", message=f"Key {key!r} holds a list or hash")
        return _decode(slot.value)

    async def set(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        if nx and self._live(key) is not None:
            return False
        expires_at = self._now() + ex if ex is not None else None
        self._data[key] = _Slot(json.dumps(value), expires_at)
        return True

    async def delete(self, key: str) -> int:
        return 1 if self._data.pop(key, None) is not None else 0

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def incr(self, key: str) -> int:
        slot = self._live(key)
        current = int(_decode(slot.value)) if slot else 0
        current += 1
        self._data[key] = _Slot(json.dumps(current), slot.expires_at if slot else None)
        return current

    async def incrbyfloat(self, key: str, amount: float) -> float:
        slot = self._live(key)
        current = float(_decode(slot.value)) if slot else 0.0
        current += amount
        self._data[key] = _Slot(json.dumps(current), slot.expires_at if slot else None)
        return current

    async def lpush(self, key: str, *values: str) -> int:
        slot = self._live(key)
        if slot is None:
            slot = _Slot([])
            self._data[key] = slot
        elif not isinstance(slot.value, list):
            raise StoreError(code="wrong_type", message=f"Key {key!r} does not hold a list")
        for value in values:
            slot.value.insert(0, value)
        return len(slot.value)

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        slot = self._live(key)
        if slot is None:
            return []
        items = slot.value
        end = len(items) if stop == -1 else stop + 1
        return list(items[start:end])

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        slot = self._live(key)
        if slot is None:
            return True
        if not isinstance(slot.value, list):
            raise StoreError(code="wrong_type", message=f"Key {key!r} does not hold a list")
        end = len(slot.value) if stop == -1 else stop + 1
        slot.value[:] = slot.value[start:end]
        if not slot.value:
            del self._data[key]
        return True

    def _hash(self, key: str, create: bool) -> Optional[_Slot]:
        slot = self._live(key)
        if slot is None:
            if not create:
                return None
            slot = _Slot({})
            self._data[key] = slot
        elif not isinstance(slot.value, dict):
            raise StoreError(code="wrong_type", message=f"Key {key!r} does not hold a hash")
        return slot

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        slot = self._hash(key, create=True)
        try:
            current = int(slot.value.get(field, "0"))
        except ValueError:
            raise StoreError(
                code="not_an_integer",
                message=f"Hash field {field!r} of {key!r} is not an integer",
            )
        current += amount
        slot.value[field] = str(current)
        return current

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        slot = self._hash(key, create=True)
        current = float(slot.value.get(field, "0")) + amount
        slot.value[field] = repr(current)
        return current

    async def hgetall(self, key: str) -> dict[str, str]:
        slot = self._hash(key, create=False)
        return dict(slot.value) if slot else {}

    async def expire(self, key: str, seconds: int) -> bool:
        slot = self._live(key)
        if slot is None:
            return False
        slot.expires_at = self._now() + seconds
        return True

    async def ttl(self, key: str) -> int:
        slot = self._live(key)
        if slot is None:
            return -2
        if slot.expires_at is None:
            return -1
        return math.ceil(slot.expires_at - self._now())


class RestKeyValueStore:
    """
    Key-value store client for the Upstash / Vercel KV REST protocol.

    Each operation POSTs a Redis command as a JSON array to the base URL
    with a bearer token and reads ``result`` (or ``error``) from the reply.
    """

    def __init__(
        self,
        config: KVConfig,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the REST store.

        Args:
            config: KV connection settings (must be configured)
            client: Optional shared httpx client; one is created if omitted
        """
        if not config.is_configured:
            raise StoreError(
                code="kv_not_configured",
                message="KV REST URL and token are required",
            )
        self._url = config.url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {config.token}"}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.timeout_seconds),
        )

    async def __aenter__(self) -> "RestKeyValueStore":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _command(self, *parts: Union[str, int, float]) -> Any:
        try:
            response = await self._client.post(
                self._url,
                json=[str(part) for part in parts],
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            raise StoreError(
                code="kv_unreachable",
                message=f"KV command {parts[0]} failed: {e}",
                details={"command": parts[0]},
            )

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or "error" in body:
            raise StoreError(
                code="kv_command_rejected",
                message=f"KV command {parts[0]} rejected: {body.get('error', response.status_code)}",
                details={"command": parts[0], "status_code": response.status_code},
            )
        return body.get("result")

    async def get(self, key: str) -> Any:
        return _decode(await self._command("GET", key))

    async def set(
        self,
        key: str,
        value: Any,
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> bool:
        parts: list[Union[str, int]] = ["SET", key, json.dumps(value)]
        if ex is not None:
            parts.extend(["EX", int(ex)])
        if nx:
            parts.append("NX")
        return await self._command(*parts) == "OK"

    async def delete(self, key: str) -> int:
        return int(await self._command("DEL", key) or 0)

    async def exists(self, key: str) -> bool:
        return int(await self._command("EXISTS", key) or 0) > 0

    async def incr(self, key: str) -> int:
        return int(await self._command("INCR", key))

    async def incrbyfloat(self, key: str, amount: float) -> float:
        return float(await self._command("INCRBYFLOAT", key, repr(float(amount))))

    async def lpush(self, key: str, *values: str) -> int:
        return int(await self._command("LPUSH", key, *values))

    async def lrange(self, key: str, start: int, stop: int) -> list[str]:
        return list(await self._command("LRANGE", key, start, stop) or [])

    async def ltrim(self, key: str, start: int, stop: int) -> bool:
        return await self._command("LTRIM", key, start, stop) == "OK"

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        return int(await self._command("HINCRBY", key, field, int(amount)))

    async def hincrbyfloat(self, key: str, field: str, amount: float) -> float:
        return float(await self._command("HINCRBYFLOAT", key, field, repr(float(amount))))

    async def hgetall(self, key: str) -> dict[str, str]:
        """Field map of a hash; the REST reply is a flat field/value list."""
        reply = await self._command("HGETALL", key) or []
        if isinstance(reply, dict):
            return {str(k): str(v) for k, v in reply.items()}
        return {str(k): str(v) for k, v in zip(reply[0::2], reply[1::2])}

    async def expire(self, key: str, seconds: int) -> bool:
        return int(await self._command("EXPIRE", key, int(seconds)) or 0) == 1

    async def ttl(self, key: str) -> int:
        return int(await self._command("TTL", key))
