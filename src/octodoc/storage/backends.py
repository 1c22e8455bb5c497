"""Record store backends used behind :class:`~octodoc.resilience.store.ResilientStore`."""

from __future__ import annotations

import asyncio
import contextlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, MutableMapping, Protocol, Sequence, Tuple

import asyncpg
from redis import exceptions as redis_exceptions
from redis.asyncio import Redis

from octodoc.errors import NonRetryableDependencyError, RetryableDependencyError
from octodoc.metrics.observability import get_logger

Record = Dict[str, Any]


class RecordBackend(Protocol):
    """Read/write contract shared by real backends and the static fallback."""

    name: str

    async def get(self, kind: str, key: str) -> Record | None:
        """Return the record stored under ``kind``/``key`` or ``None``."""

    async def put(self, kind: str, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        """Create or replace a record."""

    async def delete(self, kind: str, key: str) -> bool:
        """Remove a record; returns whether it existed."""

    async def list(self, kind: str, *, session_id: str | None = None) -> Sequence[Record]:
        """Return records of ``kind``, optionally restricted to one session."""

    async def ping(self) -> None:
        """Raise when the backend cannot serve requests."""

    async def close(self) -> None:
        """Release connections."""


class MemoryRecordBackend:
    """Process-local backend used when no store URL is configured."""

    def __init__(self, name: str = "memory", *, now: Callable[[], datetime] | None = None) -> None:
        self.name = name
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._records: MutableMapping[Tuple[str, str], Tuple[Record, datetime | None]] = {}

    def _live(self, kind: str, key: str) -> Record | None:
        entry = self._records.get((kind, key))
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._now():
            self._records.pop((kind, key), None)
            return None
        return value

    async def get(self, kind: str, key: str) -> Record | None:
        value = self._live(kind, key)
        return json.loads(json.dumps(value)) if value is not None else None

    async def put(self, kind: str, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        expires_at = self._now() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._records[(kind, key)] = (json.loads(json.dumps(dict(value))), expires_at)

    async def delete(self, kind: str, key: str) -> bool:
        existed = self._live(kind, key) is not None
        self._records.pop((kind, key), None)
        return existed

    async def list(self, kind: str, *, session_id: str | None = None) -> Sequence[Record]:
        records: List[Record] = []
        for record_kind, key in list(self._records):
            if record_kind != kind:
                continue
            value = self._live(record_kind, key)
            if value is None:
                continue
            if session_id is not None and value.get("session_id") != session_id:
                continue
            records.append(json.loads(json.dumps(value)))
        return records

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        return None


class RedisRecordBackend:
    """Redis-backed records stored as JSON strings with native TTLs."""

    _PREFIX = "octodoc"

    def __init__(self, client: Redis | None = None, *, name: str = "redis", url: str | None = None) -> None:
        self.name = name
        if client is not None:
            self._client = client
        elif url:
            self._client = Redis.from_url(url)
        else:
            self._client = Redis()

    def _key(self, kind: str, key: str) -> str:
        return f"{self._PREFIX}:{kind}:{key}"

    def _index_key(self, kind: str, session_id: str) -> str:
        return f"{self._PREFIX}:index:{kind}:{session_id}"

    @contextlib.contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except (redis_exceptions.AuthenticationError, redis_exceptions.NoPermissionError) as exc:
            raise NonRetryableDependencyError(self.name, f"authorization failed: {exc}") from exc
        except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError, OSError) as exc:
            raise RetryableDependencyError(self.name, str(exc) or exc.__class__.__name__) from exc
        except redis_exceptions.RedisError as exc:
            raise NonRetryableDependencyError(self.name, str(exc)) from exc

    async def get(self, kind: str, key: str) -> Record | None:
        with self._translate_errors():
            raw = await self._client.get(self._key(kind, key))
        return _loads(raw)

    async def put(self, kind: str, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        payload = json.dumps(dict(value))
        session_id = value.get("session_id")
        with self._translate_errors():
            await self._client.set(self._key(kind, key), payload, ex=ttl_seconds)
            if session_id:
                index = self._index_key(kind, str(session_id))
                await self._client.sadd(index, key)
                if ttl_seconds:
                    await self._client.expire(index, ttl_seconds)

    async def delete(self, kind: str, key: str) -> bool:
        with self._translate_errors():
            raw = await self._client.get(self._key(kind, key))
            removed = await self._client.delete(self._key(kind, key))
            record = _loads(raw)
            if record and record.get("session_id"):
                await self._client.srem(self._index_key(kind, str(record["session_id"])), key)
        return bool(removed)

    async def list(self, kind: str, *, session_id: str | None = None) -> Sequence[Record]:
        with self._translate_errors():
            if session_id is not None:
                members = await self._client.smembers(self._index_key(kind, session_id))
                keys = [self._key(kind, _text(member)) for member in sorted(members)]
            else:
                keys = [
                    _text(key)
                    async for key in self._client.scan_iter(match=f"{self._PREFIX}:{kind}:*")
                ]
            values = await self._client.mget(keys) if keys else []
        records = [record for record in (_loads(raw) for raw in values) if record is not None]
        if session_id is not None:
            records = [record for record in records if record.get("session_id") == session_id]
        return records

    async def ping(self) -> None:
        with self._translate_errors():
            await self._client.ping()

    async def close(self) -> None:
        with contextlib.suppress(redis_exceptions.RedisError, OSError):
            await self._client.aclose()


class PostgresRecordBackend:
    """Postgres-backed records kept in a single JSONB table."""

    _DDL = """
        CREATE TABLE IF NOT EXISTS octodoc_records (
            kind TEXT NOT NULL,
            key TEXT NOT NULL,
            session_id TEXT,
            payload JSONB NOT NULL,
            expires_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (kind, key)
        )
    """

    def __init__(self, dsn: str, *, name: str = "postgres", min_size: int = 1, max_size: int = 10) -> None:
        self.name = name
        self.dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()
        self._logger = get_logger("storage.postgres")

    @contextlib.contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except asyncpg.exceptions.InvalidAuthorizationSpecificationError as exc:
            raise NonRetryableDependencyError(self.name, f"authorization failed: {exc}") from exc
        except (
            asyncpg.exceptions.PostgresConnectionError,
            asyncpg.exceptions.CannotConnectNowError,
            asyncpg.exceptions.TooManyConnectionsError,
            OSError,
            TimeoutError,
        ) as exc:
            raise RetryableDependencyError(self.name, str(exc) or exc.__class__.__name__) from exc
        except asyncpg.exceptions.PostgresError as exc:
            raise NonRetryableDependencyError(self.name, str(exc)) from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            async with self._pool_lock:
                if self._pool is None:
                    with self._translate_errors():
                        pool = await asyncpg.create_pool(dsn=self.dsn, min_size=self._min_size, max_size=self._max_size)
                        async with pool.acquire() as conn:
                            await conn.execute(self._DDL)
                    self._pool = pool
                    self._logger.info("postgres.pool_ready", name=self.name)
        return self._pool

    async def get(self, kind: str, key: str) -> Record | None:
        pool = await self._get_pool()
        with self._translate_errors():
            row = await pool.fetchrow(
                """
                SELECT payload FROM octodoc_records
                 WHERE kind=$1 AND key=$2 AND (expires_at IS NULL OR expires_at > now())
                """,
                kind,
                key,
            )
        return _loads(row["payload"]) if row else None

    async def put(self, kind: str, key: str, value: Mapping[str, Any], *, ttl_seconds: int | None = None) -> None:
        pool = await self._get_pool()
        session_id = value.get("session_id")
        with self._translate_errors():
            await pool.execute(
                """
                INSERT INTO octodoc_records (kind, key, session_id, payload, expires_at, updated_at)
                VALUES ($1, $2, $3, $4::jsonb,
                        CASE WHEN $5::int IS NULL THEN NULL ELSE now() + make_interval(secs => $5::int) END,
                        now())
                ON CONFLICT (kind, key) DO UPDATE
                   SET session_id = EXCLUDED.session_id,
                       payload = EXCLUDED.payload,
                       expires_at = EXCLUDED.expires_at,
                       updated_at = now()
                """,
                kind,
                key,
                str(session_id) if session_id else None,
                json.dumps(dict(value)),
                ttl_seconds,
            )

    async def delete(self, kind: str, key: str) -> bool:
        pool = await self._get_pool()
        with self._translate_errors():
            status = await pool.execute("DELETE FROM octodoc_records WHERE kind=$1 AND key=$2", kind, key)
        return status.endswith(" 1")

    async def list(self, kind: str, *, session_id: str | None = None) -> Sequence[Record]:
        pool = await self._get_pool()
        with self._translate_errors():
            rows = await pool.fetch(
                """
                SELECT payload FROM octodoc_records
                 WHERE kind=$1 AND ($2::text IS NULL OR session_id=$2)
                   AND (expires_at IS NULL OR expires_at > now())
                 ORDER BY updated_at
                """,
                kind,
                session_id,
            )
        return [record for record in (_loads(row["payload"]) for row in rows) if record is not None]

    async def ping(self) -> None:
        pool = await self._get_pool()
        with self._translate_errors():
            await pool.fetchval("SELECT 1")

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


def build_backend(url: str | None, *, name: str, now: Callable[[], datetime] | None = None) -> RecordBackend:
    """Pick a backend implementation from a store URL (empty means in-process)."""

    if not url:
        return MemoryRecordBackend(name=name, now=now)
    scheme = url.split("://", 1)[0].lower()
    if scheme in {"redis", "rediss", "unix"}:
        return RedisRecordBackend(name=name, url=url)
    if scheme in {"postgres", "postgresql"}:
        return PostgresRecordBackend(url, name=name)
    raise ValueError(f"Unsupported store URL scheme: {scheme}")


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _loads(raw: Any) -> Record | None:
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        loaded = json.loads(_text(raw))
    except json.JSONDecodeError:
        return None
    return loaded if isinstance(loaded, dict) else None


__all__ = [
    "MemoryRecordBackend",
    "PostgresRecordBackend",
    "Record",
    "RecordBackend",
    "RedisRecordBackend",
    "build_backend",
]
