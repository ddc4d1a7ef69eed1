"""JSON Lines chat storage with an asyncio worker pool in front of an in-memory cache."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from collections import Counter
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .config import DEFAULT_LIST_LIMIT, DEFAULT_QUEUE_SIZE, DEFAULT_WORKER_COUNT, ensure_file
from .errors import (
    ChatNotFoundError,
    InvalidOperationError,
    KCliError,
    OperationCancelledError,
    PersistenceError,
    StoreError,
    StoreShutdownError,
)
from .models import ROLE_SYSTEM, ChatRecord, Message
from .operations import (
    AddChat,
    DeleteChat,
    GetChat,
    ListChats,
    Operation,
    OperationRequest,
    OperationResponse,
    UpdateChat,
)


class ChatStore:
    """File-backed chat repository.

    Every operation goes through a bounded queue drained by a fixed pool of
    worker tasks. Reads only take the cache lock; mutations also hold the
    file lock for the whole mutate -> rewrite -> rollback sequence, so the
    cache and the file agree once an operation has answered.
    """

    def __init__(
        self,
        path: Path,
        workers: int = DEFAULT_WORKER_COUNT,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        logger: logging.Logger | None = None,
    ):
        self.log = logger or logging.getLogger(__name__)
        try:
            self.path = ensure_file(path)
        except OSError as exc:
            raise StoreError(f"failed to initialize chat file {path}: {exc}") from exc

        self._worker_count = workers if workers > 0 else DEFAULT_WORKER_COUNT
        self._queue: asyncio.Queue[OperationRequest] = asyncio.Queue(maxsize=queue_size)
        self._workers: list[asyncio.Task[None]] = []

        self._cache: dict[str, ChatRecord] = {}
        self._cache_lock = asyncio.Lock()
        self._file_lock = asyncio.Lock()

        self._closed = False
        self._stopped = False

        self._cache.update({chat.id: chat for chat in load_chats(self.path, self.log)})
        self.log.info("Loaded %d chats from %s", len(self._cache), self.path)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker tasks. Called lazily by the first submission."""
        if self._closed:
            raise StoreShutdownError()
        if self._workers:
            return
        for worker_id in range(self._worker_count):
            task = asyncio.create_task(self._worker(worker_id), name=f"chat-store-worker-{worker_id}")
            self._workers.append(task)

    async def close(self) -> None:
        """Reject new work, let queued operations finish, then stop the workers."""
        if self._closed:
            self.log.info("Repository already closed")
            return
        self._closed = True

        if self._workers:
            await self._queue.join()
            for task in self._workers:
                task.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._stopped = True

        # Submitters that were blocked on a full queue may have slipped in.
        while not self._queue.empty():
            request = self._queue.get_nowait()
            request.respond(OperationResponse(error=StoreShutdownError()))
            self._queue.task_done()

        self.log.info("Repository closed gracefully")

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> ChatStore:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -- asynchronous primitive ----------------------------------------------

    async def submit(
        self,
        operation: Operation,
        cancel: asyncio.Event | None = None,
    ) -> asyncio.Future[OperationResponse]:
        """Enqueue an operation and return the future its response lands on.

        Waits only while the queue is full. If ``cancel`` is set first the
        operation is never enqueued and the future carries
        OperationCancelledError.
        """
        future: asyncio.Future[OperationResponse] = asyncio.get_running_loop().create_future()

        if self._closed:
            future.set_result(OperationResponse(error=StoreShutdownError()))
            return future

        await self.start()
        request = OperationRequest(operation, future)

        if cancel is None:
            await self._queue.put(request)
        elif cancel.is_set():
            future.set_result(OperationResponse(error=OperationCancelledError("submission cancelled")))
            return future
        else:
            put = asyncio.ensure_future(self._queue.put(request))
            waiter = asyncio.ensure_future(cancel.wait())
            try:
                await asyncio.wait({put, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                waiter.cancel()
                if not put.done():
                    put.cancel()
            if not put.done() or put.cancelled():
                self.log.info("%s submission cancelled before enqueue", type(operation).__name__)
                future.set_result(OperationResponse(error=OperationCancelledError("submission cancelled")))
                return future

        if self._stopped:
            request.respond(OperationResponse(error=StoreShutdownError()))
        else:
            self.log.debug("%s operation enqueued", type(operation).__name__)
        return future

    # -- convenience coroutines ----------------------------------------------

    async def list_chats(
        self,
        keyword: str | None = None,
        model: str | None = None,
        provider: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        cancel: asyncio.Event | None = None,
    ) -> list[ChatRecord]:
        """Chats sorted by creation time, newest first, optionally filtered.

        A chat matches when one of its messages satisfies every given filter.
        A limit of zero or less returns every match.
        """
        op = ListChats(keyword=keyword, model=model, provider=provider, limit=limit)
        return await self._call(op, cancel)

    async def get_chat(self, chat_id: str, cancel: asyncio.Event | None = None) -> ChatRecord | None:
        return await self._call(GetChat(chat_id), cancel)

    async def add_chat(self, chat: ChatRecord, cancel: asyncio.Event | None = None) -> ChatRecord:
        return await self._call(AddChat(chat), cancel)

    async def update_chat(self, chat: ChatRecord, cancel: asyncio.Event | None = None) -> ChatRecord:
        return await self._call(UpdateChat(chat), cancel)

    async def delete_chat(self, chat_id: str, cancel: asyncio.Event | None = None) -> bool:
        return await self._call(DeleteChat(chat_id), cancel)

    async def stats(self) -> dict[str, Any]:
        """Overall statistics about the stored chats."""
        chats = await self.list_chats(limit=0)
        messages = [m for chat in chats for m in chat.messages]
        models = Counter(m.model for m in messages if m.model)
        create_times = [chat.create_time for chat in chats]

        return {
            "total_chats": len(chats),
            "total_messages": len(messages),
            "date_range_start": min(create_times).strftime("%Y-%m-%d") if create_times else None,
            "date_range_end": max(create_times).strftime("%Y-%m-%d") if create_times else None,
            "top_models": [{"model": name, "count": count} for name, count in models.most_common(10)],
            "avg_messages_per_chat": round(len(messages) / len(chats), 1) if chats else 0,
        }

    async def _call(self, operation: Operation, cancel: asyncio.Event | None) -> Any:
        # cancel only races the enqueue; a queued operation always runs
        future = await self.submit(operation, cancel)
        return (await future).unwrap()

    # -- workers -------------------------------------------------------------

    async def _worker(self, worker_id: int) -> None:
        self.log.debug("Worker %d started", worker_id)
        try:
            while True:
                request = await self._queue.get()
                try:
                    try:
                        response = await self._process(request.operation)
                    except Exception as exc:
                        self.log.exception("Worker %d failed on %r", worker_id, request.operation)
                        response = OperationResponse(error=exc)
                    if not request.respond(response):
                        self.log.debug("Response for %r dropped, caller went away", request.operation)
                finally:
                    self._queue.task_done()
        finally:
            self.log.debug("Worker %d shutting down", worker_id)

    async def _process(self, operation: Operation) -> OperationResponse:
        try:
            match operation:
                case ListChats(keyword=keyword, model=model, provider=provider, limit=limit):
                    value: Any = await self._list(keyword, model, provider, limit)
                case GetChat(chat_id=str() as chat_id):
                    value = await self._get(chat_id)
                case AddChat(chat=ChatRecord() as chat):
                    value = await self._add(chat)
                case UpdateChat(chat=ChatRecord() as chat):
                    value = await self._update(chat)
                case DeleteChat(chat_id=str() as chat_id):
                    value = await self._delete(chat_id)
                case _:
                    raise InvalidOperationError(f"invalid operation data: {operation!r}")
        except KCliError as exc:
            return OperationResponse(error=exc)
        return OperationResponse(value=value)

    # -- cache operations ----------------------------------------------------

    async def _list(
        self,
        keyword: str | None,
        model: str | None,
        provider: str | None,
        limit: int,
    ) -> list[ChatRecord]:
        async with self._cache_lock:
            chats = sorted(self._cache.values(), key=lambda c: c.create_time, reverse=True)
            matched: list[ChatRecord] = []
            for chat in chats:
                if limit > 0 and len(matched) >= limit:
                    break
                if chat_matches(chat, keyword, model, provider):
                    matched.append(chat.model_copy(deep=True))
        return matched

    async def _get(self, chat_id: str) -> ChatRecord | None:
        async with self._cache_lock:
            chat = self._cache.get(chat_id)
            return chat.model_copy(deep=True) if chat is not None else None

    async def _add(self, chat: ChatRecord) -> ChatRecord:
        stored = _storable(chat)
        async with self._file_lock:
            async with self._cache_lock:
                previous = self._cache.get(chat.id)
                self._cache[chat.id] = stored
            self.log.info("Added chat to cache: %s", chat.id)

            try:
                await self._persist()
            except PersistenceError:
                async with self._cache_lock:
                    if previous is None:
                        del self._cache[chat.id]
                    else:
                        self._cache[chat.id] = previous
                self.log.warning("Rolled back add of chat %s", chat.id)
                raise
        return stored.model_copy(deep=True)

    async def _update(self, chat: ChatRecord) -> ChatRecord:
        stored = _storable(chat)
        async with self._file_lock:
            async with self._cache_lock:
                previous = self._cache.get(chat.id)
                if previous is None:
                    self.log.error("Chat with id %s not found", chat.id)
                    raise ChatNotFoundError(chat.id)
                self._cache[chat.id] = stored

            try:
                await self._persist()
            except PersistenceError:
                async with self._cache_lock:
                    self._cache[chat.id] = previous
                self.log.warning("Rolled back update of chat %s", chat.id)
                raise
        self.log.info("Updated chat in cache and persisted: %s", chat.id)
        return stored.model_copy(deep=True)

    async def _delete(self, chat_id: str) -> bool:
        async with self._file_lock:
            async with self._cache_lock:
                previous = self._cache.pop(chat_id, None)
            if previous is None:
                self.log.warning("Chat with id %s not found", chat_id)
                return False

            try:
                await self._persist()
            except PersistenceError:
                async with self._cache_lock:
                    self._cache[chat_id] = previous
                self.log.warning("Rolled back delete of chat %s", chat_id)
                raise
        self.log.info("Deleted chat from cache and persisted: %s", chat_id)
        return True

    async def _persist(self) -> None:
        """Rewrite the whole file from the cache. Caller holds the file lock."""
        async with self._cache_lock:
            chats = sorted(self._cache.values(), key=lambda c: c.create_time, reverse=True)
            lines = [chat.to_json_line() for chat in chats]

        try:
            await asyncio.to_thread(write_jsonl, self.path, lines)
        except OSError as exc:
            self.log.error("Failed to persist cache: %s", exc)
            raise PersistenceError(f"failed to persist cache: {exc}") from exc


def _storable(chat: ChatRecord) -> ChatRecord:
    """Deep copy of ``chat`` without system messages."""
    stored = chat.model_copy(deep=True)
    stored.messages = [m for m in stored.messages if m.role != ROLE_SYSTEM]
    return stored

def message_matches(
    message: Message,
    keyword: str | None,
    model: str | None,
    provider: str | None,
) -> bool:
    if keyword:
        needle = keyword.lower()
        if isinstance(message.content, str):
            texts = [message.content]
        else:
            texts = [part.text for part in message.content]
        if not any(needle in text.lower() for text in texts):
            return False

    if model and (not message.model or model.lower() not in message.model.lower()):
        return False

    if provider and (not message.provider or provider.lower() not in message.provider.lower()):
        return False

    return True


def chat_matches(
    chat: ChatRecord,
    keyword: str | None,
    model: str | None,
    provider: str | None,
) -> bool:
    """True when any single message satisfies all of the given filters."""
    if not (keyword or model or provider):
        return True
    return any(message_matches(m, keyword, model, provider) for m in chat.messages)


def load_chats(path: Path, logger: logging.Logger | None = None) -> list[ChatRecord]:
    """Read chat records from a JSON Lines file, skipping lines that do not parse."""
    log = logger or logging.getLogger(__name__)
    chats: list[ChatRecord] = []
    try:
        with path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    chats.append(ChatRecord.model_validate_json(line))
                except ValidationError:
                    log.debug("Skipping invalid chat record at %s:%d", path, line_no)
    except OSError as exc:
        raise StoreError(f"failed to load initial data from {path}: {exc}") from exc
    return chats


def write_jsonl(path: Path, lines: list[str]) -> None:
    """Atomically replace ``path`` with the given lines."""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            for line in lines:
                f.write(line)
                f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise
