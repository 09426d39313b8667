# Copyright 2026 UCP Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Ledger Store

The single source of truth for checkout sessions, orders, stock,
reservations, idempotency records, payment tokens, receipts and the webhook
queue.

Records are JSON documents addressed by (namespace, key) and carry a version
number used for optimistic compare-and-set writes:

- put(..., expected_version=None)  unconditional upsert
- put(..., expected_version=0)     create only, the key must not exist
- put(..., expected_version=n)     update only if the stored version is n

Append-only streams (token audit log) are written with append() and never
pruned.

Implementations:
- InMemoryLedgerStore: process-local, used by tests and the demo server
- SqlLedgerStore: SQLAlchemy tables, any database SQLAlchemy can reach
- RetryingLedgerStore: retries transient StoreUnavailableError with backoff
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError

from .clock import utcnow
from .errors import StoreUnavailableError, VersionConflictError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MUST_NOT_EXIST = 0


@dataclass
class Record:
    key: str
    version: int
    value: Dict[str, Any]


class LedgerStore(ABC):
    """Async key-value ledger with versioned writes and append-only streams."""

    @abstractmethod
    async def get(self, namespace: str, key: str) -> Optional[Record]:
        ...

    @abstractmethod
    async def put(
        self,
        namespace: str,
        key: str,
        value: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> int:
        """Write a record and return its new version."""

    @abstractmethod
    async def scan(self, namespace: str) -> List[Record]:
        ...

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> None:
        ...

    @abstractmethod
    async def move(self, source: str, target: str, key: str) -> None:
        """Archive a record from one namespace into another."""

    @abstractmethod
    async def append(self, stream: str, value: Dict[str, Any]) -> int:
        """Append to an append-only stream and return the entry's sequence number."""

    @abstractmethod
    async def read_stream(self, stream: str) -> List[Dict[str, Any]]:
        ...

    async def close(self) -> None:
        pass

    async def load(self, namespace: str, key: str, model: Type[ModelT]) -> Optional[Tuple[ModelT, int]]:
        """Fetch a record and validate it into ``model``."""
        record = await self.get(namespace, key)
        if record is None:
            return None
        return model.model_validate(record.value), record.version

    async def save(
        self,
        namespace: str,
        key: str,
        obj: BaseModel,
        expected_version: Optional[int] = None,
    ) -> int:
        return await self.put(namespace, key, obj.model_dump(mode="json"), expected_version)

    async def load_all(self, namespace: str, model: Type[ModelT]) -> List[Tuple[ModelT, int]]:
        return [(model.model_validate(r.value), r.version) for r in await self.scan(namespace)]


# ============================================================================
# In-memory
# ============================================================================

class InMemoryLedgerStore(LedgerStore):
    """
    Process-local ledger.

    Every operation yields to the event loop once before touching state, the
    way a real store suspends on I/O, so concurrent callers interleave.
    Values are deep-copied on the way in and out.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Record]] = {}
        self._streams: Dict[str, List[Dict[str, Any]]] = {}

    async def get(self, namespace: str, key: str) -> Optional[Record]:
        await asyncio.sleep(0)
        record = self._data.get(namespace, {}).get(key)
        if record is None:
            return None
        return Record(record.key, record.version, copy.deepcopy(record.value))

    async def put(
        self,
        namespace: str,
        key: str,
        value: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> int:
        await asyncio.sleep(0)
        bucket = self._data.setdefault(namespace, {})
        current = bucket.get(key)
        actual = current.version if current else MUST_NOT_EXIST
        if expected_version is not None and expected_version != actual:
            raise VersionConflictError(namespace, key, expected_version, actual)

        version = actual + 1
        # JSON round trip keeps stored values free of live objects
        bucket[key] = Record(key, version, json.loads(json.dumps(value)))
        return version

    async def scan(self, namespace: str) -> List[Record]:
        await asyncio.sleep(0)
        return [
            Record(r.key, r.version, copy.deepcopy(r.value))
            for r in self._data.get(namespace, {}).values()
        ]

    async def delete(self, namespace: str, key: str) -> None:
        await asyncio.sleep(0)
        self._data.get(namespace, {}).pop(key, None)

    async def move(self, source: str, target: str, key: str) -> None:
        await asyncio.sleep(0)
        record = self._data.get(source, {}).pop(key, None)
        if record is not None:
            self._data.setdefault(target, {})[key] = record

    async def append(self, stream: str, value: Dict[str, Any]) -> int:
        await asyncio.sleep(0)
        entries = self._streams.setdefault(stream, [])
        entries.append(json.loads(json.dumps(value)))
        return len(entries)

    async def read_stream(self, stream: str) -> List[Dict[str, Any]]:
        await asyncio.sleep(0)
        return copy.deepcopy(self._streams.get(stream, []))


# ============================================================================
# SQL (SQLAlchemy)
# ============================================================================

metadata = MetaData()

ledger_records = Table(
    "ledger_records",
    metadata,
    Column("namespace", String(64), primary_key=True),
    Column("record_key", String(255), primary_key=True),
    Column("version", Integer, nullable=False),
    Column("body", Text, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

ledger_streams = Table(
    "ledger_streams",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("stream", String(255), nullable=False, index=True),
    Column("body", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


class SqlLedgerStore(LedgerStore):
    """
    Ledger persisted in two SQL tables.

    SQLAlchemy work runs in worker threads so callers stay suspended on I/O
    instead of blocking the event loop. OperationalError (connection lost,
    database locked) is reported as StoreUnavailableError.
    """

    def __init__(self, url: str):
        self.url = url
        self.engine = create_engine(
            url,
            connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
        )
        metadata.create_all(self.engine)

    async def _run(self, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except OperationalError as e:
            raise StoreUnavailableError(f"Ledger store unavailable: {e}") from e

    async def get(self, namespace: str, key: str) -> Optional[Record]:
        def _get():
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(ledger_records.c.version, ledger_records.c.body).where(
                        ledger_records.c.namespace == namespace,
                        ledger_records.c.record_key == key,
                    )
                ).first()
            if row is None:
                return None
            return Record(key, row.version, json.loads(row.body))

        return await self._run(_get)

    async def put(
        self,
        namespace: str,
        key: str,
        value: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> int:
        body = json.dumps(value)

        def _put():
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(ledger_records.c.version).where(
                        ledger_records.c.namespace == namespace,
                        ledger_records.c.record_key == key,
                    )
                ).first()
                actual = row.version if row else MUST_NOT_EXIST
                if expected_version is not None and expected_version != actual:
                    raise VersionConflictError(namespace, key, expected_version, actual)

                if row is None:
                    try:
                        conn.execute(insert(ledger_records).values(
                            namespace=namespace,
                            record_key=key,
                            version=1,
                            body=body,
                            updated_at=utcnow(),
                        ))
                    except IntegrityError:
                        raise VersionConflictError(namespace, key, expected_version, None)
                    return 1

                result = conn.execute(
                    update(ledger_records)
                    .where(
                        ledger_records.c.namespace == namespace,
                        ledger_records.c.record_key == key,
                        ledger_records.c.version == actual,
                    )
                    .values(version=actual + 1, body=body, updated_at=utcnow())
                )
                if result.rowcount != 1:
                    raise VersionConflictError(namespace, key, actual, None)
                return actual + 1

        return await self._run(_put)

    async def scan(self, namespace: str) -> List[Record]:
        def _scan():
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(ledger_records.c.record_key, ledger_records.c.version, ledger_records.c.body)
                    .where(ledger_records.c.namespace == namespace)
                    .order_by(ledger_records.c.record_key)
                ).all()
            return [Record(row.record_key, row.version, json.loads(row.body)) for row in rows]

        return await self._run(_scan)

    async def delete(self, namespace: str, key: str) -> None:
        def _delete():
            with self.engine.begin() as conn:
                conn.execute(delete(ledger_records).where(
                    ledger_records.c.namespace == namespace,
                    ledger_records.c.record_key == key,
                ))

        await self._run(_delete)

    async def move(self, source: str, target: str, key: str) -> None:
        def _move():
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(ledger_records).where(
                        ledger_records.c.namespace == source,
                        ledger_records.c.record_key == key,
                    )
                ).first()
                if row is None:
                    return
                conn.execute(delete(ledger_records).where(
                    ledger_records.c.namespace == target,
                    ledger_records.c.record_key == key,
                ))
                conn.execute(insert(ledger_records).values(
                    namespace=target,
                    record_key=key,
                    version=row.version,
                    body=row.body,
                    updated_at=utcnow(),
                ))
                conn.execute(delete(ledger_records).where(
                    ledger_records.c.namespace == source,
                    ledger_records.c.record_key == key,
                ))

        await self._run(_move)

    async def append(self, stream: str, value: Dict[str, Any]) -> int:
        body = json.dumps(value)

        def _append():
            with self.engine.begin() as conn:
                result = conn.execute(insert(ledger_streams).values(
                    stream=stream,
                    body=body,
                    created_at=utcnow(),
                ))
                return result.inserted_primary_key[0]

        return await self._run(_append)

    async def read_stream(self, stream: str) -> List[Dict[str, Any]]:
        def _read():
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(ledger_streams.c.body)
                    .where(ledger_streams.c.stream == stream)
                    .order_by(ledger_streams.c.id)
                ).all()
            return [json.loads(row.body) for row in rows]

        return await self._run(_read)

    async def close(self) -> None:
        await asyncio.to_thread(self.engine.dispose)


# ============================================================================
# Retrying wrapper
# ============================================================================

class RetryingLedgerStore(LedgerStore):
    """
    Retries StoreUnavailableError locally with exponential backoff.

    A retried put first re-reads the record: when the failed attempt had in
    fact committed, its version is returned instead of writing again. Stream
    appends are not retried.

    Once attempts are exhausted the last StoreUnavailableError propagates to
    the caller, where it is reported as a retryable error.
    """

    def __init__(
        self,
        inner: LedgerStore,
        attempts: int = 3,
        base_delay: float = 0.05,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.inner = inner
        self.attempts = attempts
        self.base_delay = base_delay
        self._sleep = sleep

    async def _retry(self, operation: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        for attempt in range(1, self.attempts + 1):
            try:
                return await fn()
            except StoreUnavailableError as e:
                if attempt == self.attempts:
                    logger.error(f"Ledger {operation} failed after {attempt} attempts: {e}")
                    raise
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(f"Ledger {operation} failed (attempt {attempt}), retrying in {delay:.2f}s: {e}")
                await self._sleep(delay)

    async def get(self, namespace, key):
        return await self._retry("get", lambda: self.inner.get(namespace, key))

    async def put(self, namespace, key, value, expected_version=None):
        attempted = False

        async def write():
            nonlocal attempted
            if attempted:
                record = await self.inner.get(namespace, key)
                if record is not None and record.value == value and _follows(record.version, expected_version):
                    logger.info(f"Ledger put {namespace}/{key} had already committed as version {record.version}")
                    return record.version
            attempted = True
            return await self.inner.put(namespace, key, value, expected_version)

        return await self._retry("put", write)

    async def scan(self, namespace):
        return await self._retry("scan", lambda: self.inner.scan(namespace))

    async def delete(self, namespace, key):
        return await self._retry("delete", lambda: self.inner.delete(namespace, key))

    async def move(self, source, target, key):
        return await self._retry("move", lambda: self.inner.move(source, target, key))

    async def append(self, stream, value):
        return await self.inner.append(stream, value)

    async def read_stream(self, stream):
        return await self._retry("read_stream", lambda: self.inner.read_stream(stream))

    async def close(self) -> None:
        await self.inner.close()


def _follows(version: int, expected_version: Optional[int]) -> bool:
    return expected_version is None or version == expected_version + 1


def create_store(url: str = "memory://", attempts: int = 3, base_delay: float = 0.05) -> LedgerStore:
    """Build the ledger named by ``url`` (``memory://`` or an SQLAlchemy URL)."""
    if url.startswith("memory://"):
        inner: LedgerStore = InMemoryLedgerStore()
    else:
        inner = SqlLedgerStore(url)
    return RetryingLedgerStore(inner, attempts=attempts, base_delay=base_delay)
