"""Thread, message and lock store protocols."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, Field

MetadataPredicate = Callable[[dict[str, Any]], bool]


class StoredThread(BaseModel):
    id: str
    resource_id: str
    title: str = "New Thread"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)


class StoredMessage(BaseModel):
    id: str
    thread_id: str
    role: Literal["user", "assistant", "system"]
    parts: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class MemoryRecord(BaseModel):
    """Persisted observational-memory counters for one thread."""

    thread_id: str
    resource_id: str | None = None
    pending_message_tokens: int = 0
    observation_token_count: int = 0
    last_observed_at: datetime | None = None
    # Thresholds are either a number or a {"min": .., "max": ..} range.
    config: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class ThreadStore(Protocol):
    async def get_thread(self, thread_id: str) -> StoredThread | None: ...

    async def save_thread(self, thread: StoredThread) -> None: ...

    async def list_threads(
        self,
        *,
        resource_id: str | None = ...,
        predicate: MetadataPredicate | None = ...,
    ) -> list[StoredThread]: ...

    async def save_message(self, message: StoredMessage) -> None: ...

    async def list_messages(
        self,
        thread_id: str,
        *,
        page: int = ...,
        per_page: int | None = ...,
        order: Literal["asc", "desc"] = ...,
    ) -> list[StoredMessage]: ...

    async def get_memory_record(
        self, thread_id: str, resource_id: str | None = ...
    ) -> MemoryRecord | None: ...

    async def save_memory_record(self, record: MemoryRecord) -> None: ...

    async def setup(self) -> None: ...

    async def teardown(self) -> None: ...


@runtime_checkable
class ThreadLock(Protocol):
    def acquire(self, thread_id: str) -> None: ...

    def release(self, thread_id: str) -> None: ...
