"""
The Relay Agent - Backup permission notifications

Publication never waits on the backup service. Changes are queued here and a
small pool of workers delivers them with bounded, exponentially spaced
retries. Every delivery walks an explicit state machine:

    pending -> attempted -> succeeded | exhausted | rejected
    pending -> dropped     (queue overflow, oldest first)
    any     -> abandoned   (shutdown grace period ran out)
"""

import asyncio
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Deque, List, Optional

import httpx
from pydantic import BaseModel, Field

from config.settings import settings
from services.errors import NotifierError

logger = logging.getLogger(__name__)


# =============================================================================
# MODELS
# =============================================================================

class BackupNotification(BaseModel):
    """Payload posted to the backup service"""
    event_type: str = "backup_permission_update"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    thread_id: str
    user_id: str
    backup_allowed: bool
    message_id: Optional[str] = None
    license_name: Optional[str] = None


class DeliveryState(str, Enum):
    PENDING = "pending"
    ATTEMPTED = "attempted"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    REJECTED = "rejected"
    DROPPED = "dropped"
    ABANDONED = "abandoned"


TERMINAL_STATES = {
    DeliveryState.SUCCEEDED,
    DeliveryState.EXHAUSTED,
    DeliveryState.REJECTED,
    DeliveryState.DROPPED,
    DeliveryState.ABANDONED,
}


@dataclass
class Delivery:
    notification: BackupNotification
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    last_status: Optional[int] = None
    last_error: Optional[str] = None
    error: Optional[NotifierError] = None
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    async def wait(self, timeout: Optional[float] = None) -> "Delivery":
        await asyncio.wait_for(self.done.wait(), timeout=timeout)
        return self


# =============================================================================
# RELAY AGENT
# =============================================================================

class NotificationRelay:
    """Queues backup notifications and delivers them in the background"""

    def __init__(
        self,
        endpoint: str,
        *,
        enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 5,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
        queue_size: int = 256,
        workers: int = 2,
        history_size: int = 100,
        sleep=asyncio.sleep,
    ):
        self.logger = logging.getLogger("notification_relay")
        self.endpoint = endpoint
        self.enabled = enabled
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.worker_count = max(1, workers)

        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(1, queue_size))
        self._workers: List[asyncio.Task] = []

        self.history: Deque[Delivery] = deque(maxlen=history_size)
        self.stats: Counter = Counter()

    @classmethod
    def from_settings(cls, config=settings, **overrides) -> "NotificationRelay":
        options = dict(
            enabled=config.backup_enabled,
            timeout_seconds=config.notifier_timeout_seconds,
            max_attempts=config.notifier_max_attempts,
            backoff_base_seconds=config.notifier_backoff_base_seconds,
            backoff_max_seconds=config.notifier_backoff_max_seconds,
            queue_size=config.notifier_queue_size,
            workers=config.notifier_workers,
        )
        options.update(overrides)
        endpoint = options.pop("endpoint", config.backup_endpoint)
        return cls(endpoint, **options)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows the given attempt number"""
        return min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** (attempt - 1)))

    # -------------------------------------------------------------------------
    # Enqueue side
    # -------------------------------------------------------------------------

    def notify(
        self,
        thread_id: int,
        user_id: int,
        backup_allowed: bool,
        message_id: Optional[int] = None,
        license_name: Optional[str] = None,
    ) -> Optional[Delivery]:
        """Queue a notification without waiting for it to be delivered"""
        if not self.enabled:
            self.logger.info(f"Backup notifications disabled, skipping thread {thread_id}")
            return None

        delivery = Delivery(
            notification=BackupNotification(
                thread_id=str(thread_id),
                user_id=str(user_id),
                backup_allowed=backup_allowed,
                message_id=str(message_id) if message_id is not None else None,
                license_name=license_name,
            )
        )
        if self._queue.full():
            oldest = self._queue.get_nowait()
            self._queue.task_done()
            self.logger.warning(
                f"Notification queue full, dropping oldest delivery for thread {oldest.notification.thread_id}"
            )
            self._finish(oldest, DeliveryState.DROPPED)
        self._queue.put_nowait(delivery)
        self.logger.debug(f"Queued backup notification for thread {thread_id} (backup_allowed={backup_allowed})")
        return delivery

    # -------------------------------------------------------------------------
    # Delivery side
    # -------------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    def _finish(self, delivery: Delivery, state: DeliveryState) -> None:
        delivery.state = state
        self.stats[state.value] += 1
        self.history.append(delivery)
        delivery.done.set()

    async def deliver(self, delivery: Delivery) -> Delivery:
        """Run one delivery through the state machine until it is terminal"""
        client = self._get_client()
        payload = delivery.notification.model_dump(mode="json")
        thread_id = delivery.notification.thread_id

        while delivery.attempts < self.max_attempts:
            delivery.attempts += 1
            delivery.state = DeliveryState.ATTEMPTED
            try:
                response = await client.post(self.endpoint, json=payload)
            except httpx.HTTPError as e:
                delivery.last_error = f"{type(e).__name__}: {e}"
                self.logger.warning(
                    f"Backup notification for thread {thread_id} failed "
                    f"(attempt {delivery.attempts}/{self.max_attempts}): {delivery.last_error}"
                )
            else:
                delivery.last_status = response.status_code
                if response.is_success:
                    self.logger.info(
                        f"✅ Backup notification for thread {thread_id} delivered after {delivery.attempts} attempt(s)"
                    )
                    self._finish(delivery, DeliveryState.SUCCEEDED)
                    return delivery

                # Redirects are not followed, so 3xx is as final as 4xx
                if response.status_code < 500:
                    delivery.last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                    delivery.error = NotifierError(
                        f"Backup service rejected notification for thread {thread_id}: {delivery.last_error}"
                    )
                    self.logger.warning(f"{delivery.error}; not retrying")
                    self._finish(delivery, DeliveryState.REJECTED)
                    return delivery

                delivery.last_error = f"HTTP {response.status_code}"
                self.logger.warning(
                    f"Backup service returned {response.status_code} for thread {thread_id} "
                    f"(attempt {delivery.attempts}/{self.max_attempts})"
                )

            if delivery.attempts < self.max_attempts:
                await self._sleep(self.backoff_delay(delivery.attempts))

        delivery.error = NotifierError(
            f"Gave up notifying backup service for thread {thread_id} after "
            f"{delivery.attempts} attempts: {delivery.last_error}"
        )
        self.logger.error(str(delivery.error))
        self._finish(delivery, DeliveryState.EXHAUSTED)
        return delivery

    async def _worker(self, index: int) -> None:
        while True:
            delivery = await self._queue.get()
            try:
                await self.deliver(delivery)
            except asyncio.CancelledError:
                self._finish(delivery, DeliveryState.ABANDONED)
                raise
            except Exception as e:
                self.logger.error(f"Relay worker {index} crashed on thread {delivery.notification.thread_id}: {e}")
                self._finish(delivery, DeliveryState.EXHAUSTED)
            finally:
                self._queue.task_done()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"notification-relay-{i}")
            for i in range(self.worker_count)
        ]
        self.logger.info(f"Notification relay started with {self.worker_count} worker(s) -> {self.endpoint}")

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Give pending deliveries a grace period, then abandon the rest"""
        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace_seconds)
            except asyncio.TimeoutError:
                self.logger.warning(
                    f"Notification relay grace period of {grace_seconds}s expired with "
                    f"{self.queue_depth} queued delivery(ies)"
                )
            for task in self._workers:
                task.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []

        while not self._queue.empty():
            delivery = self._queue.get_nowait()
            self._queue.task_done()
            self.logger.warning(f"Abandoning backup notification for thread {delivery.notification.thread_id}")
            self._finish(delivery, DeliveryState.ABANDONED)

        await self.close()
        self.logger.info("Notification relay stopped")

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None


# =============================================================================
# CLI
# =============================================================================

async def main():
    """Resend a single backup notification by hand"""
    import argparse

    parser = argparse.ArgumentParser(description="Relay Agent - resend a backup notification")
    parser.add_argument('--thread', type=int, required=True, help='Thread id')
    parser.add_argument('--user', type=int, required=True, help='Publishing user id')
    parser.add_argument('--backup', choices=['true', 'false'], required=True, help='Backup permission')
    parser.add_argument('--endpoint', default=settings.backup_endpoint)
    parser.add_argument('--log-level', default=settings.log_level)

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    relay = NotificationRelay.from_settings(settings, endpoint=args.endpoint, enabled=True)
    delivery = Delivery(
        notification=BackupNotification(
            thread_id=str(args.thread),
            user_id=str(args.user),
            backup_allowed=args.backup == 'true',
        )
    )
    try:
        await relay.deliver(delivery)
    finally:
        await relay.close()

    if delivery.state == DeliveryState.SUCCEEDED:
        print(f"✅ Delivered after {delivery.attempts} attempt(s)")
    else:
        print(f"❌ Delivery {delivery.state.value}: {delivery.last_error}")


if __name__ == "__main__":
    asyncio.run(main())
