"""Reliable delivery of patient messages.

Messages are shown optimistically as ``sending`` and delivered one at a time
by a background drain task. Each message moves through::

    sending -> sent
    sending -> failed -> (retry) -> sending
    sending -> permanently_failed      (the attempt that spends the retry budget)
    failed  -> permanently_failed      (restored from storage with no budget left)

The attempt that spends the budget never shows ``failed``; it goes straight
to ``permanently_failed`` and ``on_retry_exhausted`` fires once with the
recorded ``FailedMessage``.

A ``sent`` message never changes again. Pending and failed messages are
persisted per session so they survive a reload, and every queue only ever
touches its own session's storage key and tasks.
"""

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Sequence

from intake.config.settings import settings
from intake.models.queue import (
    DeliveryOutcome,
    DeliveryReceipt,
    FailedMessage,
    MessageStatus,
    MessageWithStatus,
    PendingMessage,
)
from intake.models.session import ChatMessage, utc_now
from intake.services.queue_storage import (
    InMemoryQueueStorage,
    QueueStorage,
    clear_queue,
    load_queue,
    save_queue,
)

logger = logging.getLogger(__name__)

SendFn = Callable[[PendingMessage], Awaitable[DeliveryReceipt]]
RetryExhaustedFn = Callable[[FailedMessage], None]


def generate_temp_id() -> str:
    return f"temp-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


def recover_sent_messages(messages: Sequence[MessageWithStatus]) -> List[MessageWithStatus]:
    """Only the ``sent`` messages, in their original order; the input is left untouched."""
    return [message.model_copy() for message in messages if message.status == MessageStatus.SENT]


class MessageReliabilityQueue:
    """
    Per-session outbound message queue with bounded retries.

    Args:
        session_id: Session whose messages this queue delivers
        send: Coroutine that delivers one message and returns the server receipt
        storage: Where pending/failed messages are persisted
        max_retries: Automatic retries before a message is permanently failed
        retry_delay: Seconds to wait before each automatic retry
        on_retry_exhausted: Called once a message becomes permanently failed
    """

    def __init__(
        self,
        session_id: str,
        send: SendFn,
        storage: Optional[QueueStorage] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        on_retry_exhausted: Optional[RetryExhaustedFn] = None,
    ):
        self.session_id = session_id
        self.storage = storage if storage is not None else InMemoryQueueStorage()
        self.max_retries = settings.message_queue_max_retries if max_retries is None else max_retries
        self.retry_delay = (
            settings.message_queue_retry_delay_seconds if retry_delay is None else retry_delay
        )
        self.messages: List[MessageWithStatus] = []

        self._send = send
        self._on_retry_exhausted = on_retry_exhausted
        self._pending: Dict[str, PendingMessage] = {}
        self._failed: Dict[str, FailedMessage] = {}
        self._queue: Deque[str] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._abandoned = False

        self._restore()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    @property
    def pending(self) -> List[PendingMessage]:
        return list(self._pending.values())

    @property
    def failed(self) -> List[FailedMessage]:
        return list(self._failed.values())

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    @property
    def has_failed(self) -> bool:
        return bool(self._failed)

    @property
    def is_processing(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def get_message(self, temp_id: str) -> Optional[MessageWithStatus]:
        for message in self.messages:
            if message.temp_id == temp_id:
                return message
        return None

    def has_reached_max_retries(self, temp_id: str) -> bool:
        message = self.get_message(temp_id)
        return message is not None and message.status == MessageStatus.PERMANENTLY_FAILED

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def initialize_messages(self, server_messages: Sequence[ChatMessage]) -> None:
        """Seed the conversation with history already confirmed by the server."""
        unsent = [m for m in self.messages if m.status != MessageStatus.SENT]
        self.messages = [MessageWithStatus.from_chat_message(m) for m in server_messages] + unsent

    def add_message(self, message: ChatMessage) -> bool:
        """
        Append a message that arrived from the server on its own, e.g. a late AI reply.

        Returns:
            False if a message with the same id is already shown
        """
        if any(existing.id == message.id for existing in self.messages):
            return False
        self.messages.append(MessageWithStatus.from_chat_message(message))
        return True

    def enqueue(self, content: str, images: Optional[List[str]] = None) -> str:
        """
        Queue a message for delivery and show it immediately as ``sending``.

        Must be called from a running event loop; delivery happens in the
        background and stays in enqueue order.

        Returns:
            Temporary id identifying the message until the server assigns one
        """
        if self._abandoned:
            raise RuntimeError(f"Message queue for session {self.session_id} was abandoned")

        temp_id = generate_temp_id()
        pending = PendingMessage(temp_id=temp_id, content=content, images=images)

        self._pending[temp_id] = pending
        self.messages.append(
            MessageWithStatus(
                id=temp_id,
                temp_id=temp_id,
                content=content,
                images=images,
                timestamp=pending.timestamp,
                status=MessageStatus.SENDING,
            )
        )
        self._queue.append(temp_id)
        self._persist()
        self._kick()

        logger.debug(f"Queued message {temp_id} for session {self.session_id}")
        return temp_id

    def on_delivery_result(self, temp_id: str, outcome: DeliveryOutcome) -> None:
        """
        Apply the result of one delivery attempt.

        Success marks the message ``sent`` under its server id and places the
        AI reply right after it. Failure marks it ``failed`` and schedules a
        retry; the failure that spends the budget skips ``failed`` and marks
        it ``permanently_failed`` directly.
        Results for an already ``sent`` message are ignored.
        """
        index = self._index_of(temp_id)
        if index is None:
            logger.warning(f"Delivery result for unknown message {temp_id}, ignoring")
            return

        message = self.messages[index]
        if message.status == MessageStatus.SENT:
            logger.warning(f"Message {temp_id} was already sent, ignoring late delivery result")
            return

        if outcome.succeeded:
            self._mark_sent(index, outcome.receipt)
        else:
            self._mark_failed(index, outcome.error or "Failed to send message")
        self._persist()

    def retry(self, temp_id: str) -> bool:
        """
        Explicitly resend a failed message.

        Permanently failed messages get a fresh retry budget.

        Returns:
            True if the message was queued again
        """
        message = self.get_message(temp_id)
        if message is None or message.status not in (
            MessageStatus.FAILED,
            MessageStatus.PERMANENTLY_FAILED,
        ):
            return False

        self._cancel_retry(temp_id)
        return self._requeue(temp_id, reset_budget=message.status == MessageStatus.PERMANENTLY_FAILED)

    def retry_all_failed(self) -> int:
        """Resend every failed message, oldest first. Permanently failed ones are left alone."""
        candidates = sorted(
            (
                failed
                for failed in self._failed.values()
                if self.get_message(failed.temp_id).status == MessageStatus.FAILED
            ),
            key=lambda failed: failed.timestamp,
        )

        for failed in candidates:
            self._cancel_retry(failed.temp_id)
            self._requeue(failed.temp_id)

        if candidates:
            logger.info(f"Retrying {len(candidates)} failed message(s) for session {self.session_id}")
        return len(candidates)

    async def start_fresh(self) -> List[MessageWithStatus]:
        """Drop everything that is not ``sent`` and forget the persisted queue."""
        await self._cancel_all()
        self.messages = recover_sent_messages(self.messages)
        self._pending.clear()
        self._failed.clear()
        self._queue.clear()
        clear_queue(self.storage, self.session_id)
        logger.info(f"Started fresh for session {self.session_id} ({len(self.messages)} sent messages kept)")
        return self.messages

    async def clear(self) -> None:
        """Forget every message, sent or not, and the persisted queue. The queue stays usable."""
        await self._cancel_all()
        self.messages = []
        self._pending.clear()
        self._failed.clear()
        self._queue.clear()
        clear_queue(self.storage, self.session_id)
        logger.info(f"Cleared message queue for session {self.session_id}")

    async def abandon(self) -> None:
        """Cancel this session's in-flight delivery and retries; other sessions are unaffected."""
        self._abandoned = True
        await self._cancel_all()
        self._queue.clear()
        self._pending.clear()
        self._failed.clear()
        clear_queue(self.storage, self.session_id)
        logger.info(f"Abandoned message queue for session {self.session_id}")

    async def wait_idle(self) -> None:
        """Wait until nothing is being delivered and no retry is scheduled."""
        while True:
            tasks = [
                task
                for task in (self._drain_task, *self._retry_tasks.values())
                if task is not None and not task.done()
            ]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _restore(self) -> None:
        persisted = load_queue(self.storage, self.session_id)
        if persisted is None:
            return

        for pending in persisted.pending_messages:
            self._pending[pending.temp_id] = pending
            self.messages.append(self._optimistic(pending, MessageStatus.SENDING))
            self._queue.append(pending.temp_id)

        for failed in persisted.failed_messages:
            self._failed[failed.temp_id] = failed
            if failed.retry_count >= self.max_retries:
                status = MessageStatus.PERMANENTLY_FAILED
            else:
                status = MessageStatus.FAILED
            self.messages.append(self._optimistic(failed, status, error=failed.error))

        logger.info(
            f"Restored {len(persisted.pending_messages)} pending and "
            f"{len(persisted.failed_messages)} failed message(s) for session {self.session_id}"
        )

    def resume(self) -> None:
        """Start delivering messages restored from storage."""
        if self._queue:
            self._kick()

    @staticmethod
    def _optimistic(
        message: PendingMessage, status: MessageStatus, error: Optional[str] = None
    ) -> MessageWithStatus:
        return MessageWithStatus(
            id=message.temp_id,
            temp_id=message.temp_id,
            content=message.content,
            images=message.images,
            timestamp=message.timestamp,
            status=status,
            retry_count=message.retry_count,
            error=error,
        )

    def _index_of(self, temp_id: str) -> Optional[int]:
        for index, message in enumerate(self.messages):
            if message.temp_id == temp_id:
                return index
        return None

    def _mark_sent(self, index: int, receipt: DeliveryReceipt) -> None:
        message = self.messages[index]
        self.messages[index] = message.model_copy(
            update={"id": receipt.user_message.id, "status": MessageStatus.SENT, "error": None}
        )
        if receipt.ai_message is not None:
            self.messages.insert(index + 1, MessageWithStatus.from_chat_message(receipt.ai_message))

        self._pending.pop(message.temp_id, None)
        self._failed.pop(message.temp_id, None)
        logger.info(f"✅ Message {message.temp_id} delivered as {receipt.user_message.id}")

    def _mark_failed(self, index: int, error: str) -> None:
        message = self.messages[index]
        temp_id = message.temp_id
        source = self._pending.pop(temp_id, None) or self._failed.get(temp_id)
        if source is None:
            source = PendingMessage(
                temp_id=temp_id,
                content=message.content,
                images=message.images,
                timestamp=message.timestamp,
                retry_count=message.retry_count,
            )

        failed = FailedMessage(
            temp_id=temp_id,
            content=source.content,
            images=source.images,
            timestamp=source.timestamp,
            retry_count=source.retry_count,
            error=error,
            last_attempt=utc_now(),
        )
        self._failed[temp_id] = failed

        if failed.retry_count < self.max_retries:
            status = MessageStatus.FAILED
            logger.warning(
                f"Delivery of {temp_id} failed ({error}), "
                f"retry {failed.retry_count + 1}/{self.max_retries} in {self.retry_delay}s"
            )
            self._schedule_retry(temp_id)
        else:
            status = MessageStatus.PERMANENTLY_FAILED
            logger.error(f"❌ Max retries ({self.max_retries}) reached for message {temp_id}")

        self.messages[index] = message.model_copy(
            update={"status": status, "error": error, "retry_count": failed.retry_count}
        )

        if status == MessageStatus.PERMANENTLY_FAILED and self._on_retry_exhausted is not None:
            self._on_retry_exhausted(failed)

    def _requeue(self, temp_id: str, reset_budget: bool = False) -> bool:
        failed = self._failed.pop(temp_id, None)
        if failed is None:
            return False

        retry_count = 0 if reset_budget else failed.retry_count + 1
        self._pending[temp_id] = PendingMessage(
            temp_id=temp_id,
            content=failed.content,
            images=failed.images,
            timestamp=failed.timestamp,
            retry_count=retry_count,
        )

        index = self._index_of(temp_id)
        if index is not None:
            self.messages[index] = self.messages[index].model_copy(
                update={"status": MessageStatus.SENDING, "error": None, "retry_count": retry_count}
            )

        self._queue.append(temp_id)
        self._persist()
        self._kick()
        return True

    def _persist(self) -> None:
        save_queue(self.storage, self.session_id, self.pending, self.failed)

    def _kick(self) -> None:
        if self._abandoned:
            return
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._queue:
            temp_id = self._queue.popleft()
            pending = self._pending.get(temp_id)
            if pending is None:
                continue

            try:
                receipt = await self._send(pending)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                outcome = DeliveryOutcome.failure(str(e))
            else:
                outcome = DeliveryOutcome.success(receipt)

            self.on_delivery_result(temp_id, outcome)

    def _schedule_retry(self, temp_id: str) -> None:
        self._cancel_retry(temp_id)
        self._retry_tasks[temp_id] = asyncio.create_task(self._retry_later(temp_id))

    async def _retry_later(self, temp_id: str) -> None:
        await asyncio.sleep(self.retry_delay)
        self._retry_tasks.pop(temp_id, None)
        self._requeue(temp_id)

    def _cancel_retry(self, temp_id: str) -> None:
        task = self._retry_tasks.pop(temp_id, None)
        if task is not None:
            task.cancel()

    async def _cancel_all(self) -> None:
        tasks = list(self._retry_tasks.values())
        self._retry_tasks.clear()
        if self._drain_task is not None:
            tasks.append(self._drain_task)
            self._drain_task = None

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class MessageQueueManager:
    """Keeps one MessageReliabilityQueue per session."""

    def __init__(
        self,
        send_factory: Callable[[str], SendFn],
        storage: Optional[QueueStorage] = None,
        **queue_options,
    ):
        self._send_factory = send_factory
        self.storage = storage if storage is not None else InMemoryQueueStorage()
        self._queue_options = queue_options
        self._queues: Dict[str, MessageReliabilityQueue] = {}

    def get_queue(self, session_id: str) -> MessageReliabilityQueue:
        queue = self._queues.get(session_id)
        if queue is None:
            queue = MessageReliabilityQueue(
                session_id,
                self._send_factory(session_id),
                storage=self.storage,
                **self._queue_options,
            )
            self._queues[session_id] = queue
        return queue

    async def abandon(self, session_id: str) -> None:
        queue = self._queues.pop(session_id, None)
        if queue is not None:
            await queue.abandon()

    async def close(self) -> None:
        for session_id in list(self._queues):
            await self.abandon(session_id)
