"""Storage of transcode info and the packaging queue in Valkey/Redis."""

from __future__ import annotations

import json
import time
from typing import Any, Protocol

import redis

from .logger import get_logger
from .structure import PackagingQueueMessage, TranscodeInfo

_log = get_logger("store")
_TIMEOUT = 3.0


class StoreError(Exception):
    """A store operation failed."""


class Store(Protocol):
    def get(self, key: str) -> TranscodeInfo | None: ...

    def set(self, key: str, value: TranscodeInfo, ttl: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def enqueue_packaging_job(
        self, queue_name: str, packaging_job: PackagingQueueMessage
    ) -> None: ...


class ValkeyStore:
    """Store backed by a Redis-protocol client."""

    def __init__(self, client: Any) -> None:
        self.client = client

    @classmethod
    def from_url(cls, valkey_url: str) -> ValkeyStore:
        _log.debug("Connecting to Valkey", extra={"valkeyUrl": valkey_url})
        return cls(
            redis.Redis.from_url(
                valkey_url, socket_timeout=_TIMEOUT, socket_connect_timeout=_TIMEOUT
            )
        )

    def delete(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            raise StoreError(f"failed to delete key {key}: {exc}") from exc

    def get(self, key: str) -> TranscodeInfo | None:
        """The stored info, or None when the key does not exist."""
        try:
            result = self.client.get(key)
        except redis.RedisError as exc:
            raise StoreError(f"failed to get key {key}: {exc}") from exc
        if result is None:
            return None
        if len(result) == 0:
            raise StoreError("0 length value in valkey")
        try:
            return TranscodeInfo.from_dict(json.loads(result))
        except ValueError as exc:
            _log.error("Failed to unmarshal value from Valkey", extra={"key": key})
            raise StoreError(f"failed to unmarshal value for key {key}: {exc}") from exc

    def set(self, key: str, value: TranscodeInfo, ttl: int | None = None) -> None:
        try:
            self.client.set(key, json.dumps(value.to_dict()))
        except redis.RedisError as exc:
            raise StoreError(f"failed to set key {key}: {exc}") from exc
        if ttl is not None:
            try:
                self.client.expire(key, int(ttl))
            except redis.RedisError as exc:
                raise StoreError(f"failed to set TTL for key {key}: {exc}") from exc
            return
        try:
            self.client.persist(key)
        except redis.RedisError as exc:
            raise StoreError(f"failed to persist key {key}: {exc}") from exc
        _log.debug("Set key in Valkey", extra={"key": key, "url": value.url, "status": value.status})

    def ttl(self, key: str) -> int:
        """Seconds to live, -1 for no expiry; raises if the key does not exist."""
        try:
            result = int(self.client.ttl(key))
        except redis.RedisError as exc:
            _log.warning("Could not get TTL from valkey", extra={"key": key, "err": str(exc)})
            raise StoreError(str(exc)) from exc
        if result == -2:
            raise StoreError("key does not exist")
        return result

    def enqueue_packaging_job(
        self, queue_name: str, packaging_job: PackagingQueueMessage
    ) -> None:
        member = json.dumps(packaging_job.to_dict())
        try:
            self.client.zadd(queue_name, {member: float(int(time.time() * 1000))})
        except redis.RedisError as exc:
            raise StoreError(
                f"failed to enqueue packaging job {packaging_job.job_id}: {exc}"
            ) from exc