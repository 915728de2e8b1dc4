from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Protocol

from redis.asyncio import Redis

from ..core.config import PersistenceSettings
from ..core.logging import get_logger
from .enums import StageId
from .results import parse_stage_result
from .store import StageOutput

logger = get_logger(name=__name__)


class OutputPersistence(Protocol):
    async def save(self, output: StageOutput) -> None:
        ...

    async def load_all(self) -> list[StageOutput]:
        ...

    async def clear(self) -> None:
        ...

    async def close(self) -> None:
        ...


def encode_output(output: StageOutput) -> str:
    return json.dumps(output.as_dict())


def decode_output(value: Any) -> StageOutput:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    document = json.loads(value) if isinstance(value, str) else dict(value)
    stage_id = StageId(document["stage_id"])
    return StageOutput(
        stage_id=stage_id,
        payload=parse_stage_result(stage_id, document["payload"], keep_basis=True),
        recorded_at=datetime.fromisoformat(document["recorded_at"]),
        version=int(document["version"]),
    )


class InMemoryOutputPersistence:
    """Keeps serialized outputs in a dict; used by tests and single-process runs."""

    def __init__(self) -> None:
        self._records: dict[StageId, str] = {}

    @property
    def records(self) -> dict[StageId, str]:
        return dict(self._records)

    async def save(self, output: StageOutput) -> None:
        self._records[output.stage_id] = encode_output(output)

    async def load_all(self) -> list[StageOutput]:
        return [decode_output(value) for value in self._records.values()]

    async def clear(self) -> None:
        self._records.clear()

    async def close(self) -> None:
        return None


class RedisOutputPersistence:
    """Mirrors the latest output per stage into Redis as JSON strings."""

    def __init__(
        self,
        client: Any,
        *,
        namespace: str,
        session_id: str,
        ttl_seconds: int = 0,
    ) -> None:
        self._client = client
        self._prefix = f"{namespace}:{session_id}"
        self._ttl = ttl_seconds or None

    @classmethod
    def from_settings(cls, settings: PersistenceSettings) -> "RedisOutputPersistence":
        return cls(
            Redis.from_url(settings.redis_url),
            namespace=settings.namespace,
            session_id=settings.session_id,
            ttl_seconds=settings.ttl_seconds,
        )

    def _key(self, stage_id: StageId) -> str:
        return f"{self._prefix}:{stage_id.value}"

    async def save(self, output: StageOutput) -> None:
        await self._client.set(self._key(output.stage_id), encode_output(output), ex=self._ttl)

    async def load_all(self) -> list[StageOutput]:
        outputs: list[StageOutput] = []
        for stage_id in StageId:
            value = await self._client.get(self._key(stage_id))
            if value is None:
                continue
            try:
                outputs.append(decode_output(value))
            except (ValueError, KeyError) as exc:
                logger.warning("persisted_output_invalid", stage=stage_id.value, error=str(exc))
        return outputs

    async def clear(self) -> None:
        await self._client.delete(*(self._key(stage_id) for stage_id in StageId))

    async def close(self) -> None:
        await self._client.aclose()


def build_persistence(settings: PersistenceSettings) -> OutputPersistence:
    if settings.backend == "redis":
        return RedisOutputPersistence.from_settings(settings)
    return InMemoryOutputPersistence()


__all__ = [
    "OutputPersistence",
    "InMemoryOutputPersistence",
    "RedisOutputPersistence",
    "build_persistence",
    "encode_output",
    "decode_output",
]
