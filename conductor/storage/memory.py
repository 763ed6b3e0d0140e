"""In-memory thread store for tests and ephemeral sessions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from conductor.storage.base import (
        MemoryRecord,
        MetadataPredicate,
        StoredMessage,
        StoredThread,
    )


class MemoryThreadStore:
    def __init__(self) -> None:
        self._threads: dict[str, StoredThread] = {}
        self._messages: dict[str, list[StoredMessage]] = {}
        self._records: dict[str, MemoryRecord] = {}

    async def get_thread(self, thread_id: str) -> StoredThread | None:
        thread = self._threads.get(thread_id)
        return thread.model_copy(deep=True) if thread else None

    async def save_thread(self, thread: StoredThread) -> None:
        self._threads[thread.id] = thread.model_copy(deep=True)

    async def list_threads(
        self,
        *,
        resource_id: str | None = None,
        predicate: MetadataPredicate | None = None,
    ) -> list[StoredThread]:
        threads = [
            t.model_copy(deep=True)
            for t in self._threads.values()
            if (resource_id is None or t.resource_id == resource_id)
            and (predicate is None or predicate(t.metadata))
        ]
        return sorted(threads, key=lambda t: t.updated_at, reverse=True)

    async def save_message(self, message: StoredMessage) -> None:
        self._messages.setdefault(message.thread_id, []).append(message)

    async def list_messages(
        self,
        thread_id: str,
        *,
        page: int = 0,
        per_page: int | None = None,
        order: Literal["asc", "desc"] = "asc",
    ) -> list[StoredMessage]:
        messages = sorted(
            self._messages.get(thread_id, []),
            key=lambda m: m.created_at,
            reverse=order == "desc",
        )
        if per_page is not None:
            messages = messages[page * per_page : (page + 1) * per_page]
        return list(messages)

    async def get_memory_record(
        self, thread_id: str, resource_id: str | None = None
    ) -> MemoryRecord | None:
        return self._records.get(thread_id)

    async def save_memory_record(self, record: MemoryRecord) -> None:
        self._records[record.thread_id] = record

    async def setup(self) -> None:
        pass

    async def teardown(self) -> None:
        pass
