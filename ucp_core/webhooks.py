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
Webhook Delivery Engine

Pushes order and checkout lifecycle events to the Platform's registered
webhook endpoint, at least once and in order per endpoint.

Each event is persisted in the ledger queue before any attempt, with a
stable delivery id (sent as ``UCP-Delivery-Id`` so receivers can dedupe)
and a per-endpoint sequence number. The oldest pending event of an endpoint
blocks the ones behind it until it is delivered, rejected or dead-lettered.

Attempt outcomes:
- 2xx: delivered
- 4xx: rejected by the receiver, marked failed, not retried
- 5xx, timeout, connection error: retried with exponential backoff
  (base 1s, cap 60s, proportional jitter) up to the attempt limit, then
  moved to the dead-letter store and reported to the operator alert hook

Delivered and failed events leave the queue for the archive namespace, so
the queue only holds events that still have to go out.
"""

import asyncio
import inspect
import logging
import random
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from .clock import SystemClock
from .config import Settings
from .constants import Constants
from .errors import ResourceNotFoundError, VersionConflictError
from .locks import KeyedLock
from .models import DeliveryAttempt, WebhookEvent, WebhookStatus
from .signing import DetachedSigner, jcs_canonicalize
from .store import MUST_NOT_EXIST, LedgerStore

logger = logging.getLogger(__name__)
constants = Constants()


AlertHook = Callable[[WebhookEvent], Any]


def delivery_id_for(endpoint: str, topic: str, source_id: str) -> str:
    """Deterministic delivery id: publishing the same event twice yields one delivery."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{endpoint}|{topic}|{source_id}"))


class WebhookDeliveryEngine:
    """
    Durable, ordered, at-least-once webhook delivery.

    Args:
        store: Ledger holding the queue, endpoint sequences and dead letters
        signer: Business key used for the Request-Signature header (optional)
        settings: Timeout, attempt limit, backoff and subscribed topics
        clock: Clock for timestamps
        http_client: httpx.AsyncClient to send with (created on demand if omitted)
        sleep: Coroutine used to wait between attempts
        rng: Source of jitter in [0, 1)
        alert: Called with each dead-lettered event
    """

    def __init__(
        self,
        store: LedgerStore,
        signer: Optional[DetachedSigner] = None,
        settings: Optional[Settings] = None,
        clock=None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        alert: Optional[AlertHook] = None,
    ):
        self.store = store
        self.signer = signer
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()
        self._client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep
        self._rng = rng
        self._alert = alert

        self._enqueue_locks = KeyedLock("webhook-endpoint")
        self._delivery_locks = KeyedLock("webhook-delivery")
        self._workers: Dict[str, asyncio.Task] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}
        self._running = False

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.webhook_timeout_seconds)
        return self._client

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        endpoint: Optional[str],
        source_id: str,
    ) -> Optional[WebhookEvent]:
        """
        Queue a lifecycle event for a Platform endpoint.

        Args:
            topic: Event topic, e.g. ``order.created``
            payload: Resource snapshot to send
            endpoint: Platform webhook URL; nothing is queued when unset
            source_id: Identifies the state change (order id plus event id);
                together with endpoint and topic it fixes the delivery id

        Returns:
            The queued event, or None when there is nothing to send
        """
        if not endpoint:
            logger.debug(f"No webhook endpoint for {topic} ({source_id}); skipping")
            return None
        if topic not in self.settings.webhook_topics:
            logger.debug(f"Topic {topic} not subscribed; skipping")
            return None

        delivery_id = delivery_id_for(endpoint, topic, source_id)
        event = WebhookEvent(
            delivery_id=delivery_id,
            topic=topic,
            payload={"event_type": topic, "delivery_id": delivery_id, "data": payload},
            endpoint=endpoint,
            created_at=self.clock.now(),
        )
        return await self.enqueue(event)

    async def enqueue(self, event: WebhookEvent) -> WebhookEvent:
        """Persist an event at the tail of its endpoint's queue. Re-enqueueing is a no-op."""
        async with self._enqueue_locks.hold(event.endpoint):
            existing = await self.get_event(event.delivery_id)
            if existing is not None:
                logger.debug(f"Webhook {event.delivery_id} already queued ({existing.status.value})")
                return existing

            event.sequence = await self._next_sequence(event.endpoint)
            event.status = WebhookStatus.PENDING
            try:
                await self.store.save(
                    constants.NS_WEBHOOKS, event.delivery_id, event, expected_version=MUST_NOT_EXIST
                )
            except VersionConflictError:
                return await self.get_event(event.delivery_id)

        logger.info(f"Queued webhook {event.topic} #{event.sequence} for {event.endpoint} ({event.delivery_id})")
        self._wake(event.endpoint)
        return event

    async def _next_sequence(self, endpoint: str) -> int:
        record = await self.store.get(constants.NS_WEBHOOK_ENDPOINTS, endpoint)
        if record is None:
            sequence, version = 1, MUST_NOT_EXIST
        else:
            sequence, version = record.value["next_sequence"], record.version
        await self.store.put(
            constants.NS_WEBHOOK_ENDPOINTS,
            endpoint,
            {"endpoint": endpoint, "next_sequence": sequence + 1},
            expected_version=version,
        )
        return sequence

    async def get_event(self, delivery_id: str) -> Optional[WebhookEvent]:
        for namespace in (constants.NS_WEBHOOKS, constants.NS_WEBHOOK_ARCHIVE, constants.NS_DEAD_LETTERS):
            loaded = await self.store.load(namespace, delivery_id, WebhookEvent)
            if loaded is not None:
                return loaded[0]
        return None

    async def events(self, endpoint: Optional[str] = None) -> List[WebhookEvent]:
        """Events still in the queue, in delivery order."""
        return await self._events(constants.NS_WEBHOOKS, endpoint)

    async def archived(self, endpoint: Optional[str] = None) -> List[WebhookEvent]:
        """Delivered and failed events, in delivery order."""
        return await self._events(constants.NS_WEBHOOK_ARCHIVE, endpoint)

    async def _events(self, namespace: str, endpoint: Optional[str]) -> List[WebhookEvent]:
        events = [e for e, _ in await self.store.load_all(namespace, WebhookEvent)]
        if endpoint is not None:
            events = [e for e in events if e.endpoint == endpoint]
        return sorted(events, key=lambda e: (e.endpoint, e.sequence))

    async def pending(self, endpoint: Optional[str] = None) -> List[WebhookEvent]:
        return [e for e in await self.events(endpoint) if e.status == WebhookStatus.PENDING]

    async def _head(self, endpoint: str) -> Optional[WebhookEvent]:
        pending = await self.pending(endpoint)
        return pending[0] if pending else None

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start one worker per endpoint that has pending events."""
        self._running = True
        for endpoint in sorted({e.endpoint for e in await self.pending()}):
            self._ensure_worker(endpoint)
        logger.info(f"Webhook delivery started ({len(self._workers)} endpoint worker(s))")

    async def stop(self) -> None:
        self._running = False
        workers = list(self._workers.values())
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        self._wakeups.clear()
        logger.info("Webhook delivery stopped")

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _wake(self, endpoint: str) -> None:
        if not self._running:
            return
        self._ensure_worker(endpoint)
        self._wakeups[endpoint].set()

    def _ensure_worker(self, endpoint: str) -> None:
        task = self._workers.get(endpoint)
        if task is not None and not task.done():
            return
        self._wakeups[endpoint] = asyncio.Event()
        self._workers[endpoint] = asyncio.create_task(self._worker(endpoint), name=f"webhooks:{endpoint}")

    async def _worker(self, endpoint: str) -> None:
        wakeup = self._wakeups[endpoint]
        while self._running:
            wakeup.clear()
            try:
                await self._drain_endpoint(endpoint)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Webhook worker for {endpoint} failed; retrying on next wake-up")
            await wakeup.wait()

    async def drain(self, endpoint: Optional[str] = None) -> int:
        """Deliver every pending event now. Returns how many events were resolved."""
        if endpoint is not None:
            return await self._drain_endpoint(endpoint)
        resolved = 0
        for name in sorted({e.endpoint for e in await self.pending()}):
            resolved += await self._drain_endpoint(name)
        return resolved

    async def _drain_endpoint(self, endpoint: str) -> int:
        resolved = 0
        async with self._delivery_locks.hold(endpoint):
            while True:
                head = await self._head(endpoint)
                if head is None:
                    return resolved
                await self._deliver(head)
                resolved += 1

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt ``attempt`` (1-based): capped exponential plus jitter."""
        delay = min(
            self.settings.webhook_backoff_cap_seconds,
            self.settings.webhook_backoff_base_seconds * (2 ** (attempt - 1)),
        )
        return delay * (1 + self.settings.webhook_jitter * self._rng())

    async def _deliver(self, event: WebhookEvent) -> WebhookEvent:
        loaded = await self.store.load(constants.NS_WEBHOOKS, event.delivery_id, WebhookEvent)
        event, version = loaded

        while event.status == WebhookStatus.PENDING:
            event.attempts += 1
            status_code, error = await self._attempt(event)
            now = self.clock.now()
            attempt = DeliveryAttempt(
                attempt=event.attempts,
                status_code=status_code,
                error=error,
                attempted_at=now,
            )
            event.attempt_log.append(attempt)

            if status_code is not None and 200 <= status_code < 300:
                event.status = WebhookStatus.DELIVERED
                event.delivered_at = now
                event.last_error = None
                logger.info(
                    f"Delivered webhook {event.topic} #{event.sequence} to {event.endpoint} "
                    f"on attempt {event.attempts}"
                )
            elif status_code is not None and 400 <= status_code < 500:
                event.status = WebhookStatus.FAILED
                event.last_error = f"HTTP {status_code}"
                logger.error(
                    f"Webhook {event.delivery_id} rejected by {event.endpoint} with HTTP {status_code}; not retrying"
                )
            else:
                event.last_error = error or f"HTTP {status_code}"
                if event.attempts >= self.settings.webhook_max_attempts:
                    event.status = WebhookStatus.DEAD_LETTERED
                else:
                    attempt.backoff = self.backoff(event.attempts)
                    logger.warning(
                        f"Webhook {event.delivery_id} attempt {event.attempts} failed ({event.last_error}); "
                        f"retrying in {attempt.backoff:.2f}s"
                    )

            version = await self.store.save(constants.NS_WEBHOOKS, event.delivery_id, event, expected_version=version)

            if event.status == WebhookStatus.DEAD_LETTERED:
                await self._dead_letter(event)
            elif event.status in (WebhookStatus.DELIVERED, WebhookStatus.FAILED):
                await self.store.move(constants.NS_WEBHOOKS, constants.NS_WEBHOOK_ARCHIVE, event.delivery_id)
            elif event.status == WebhookStatus.PENDING:
                await self._sleep(attempt.backoff)

        return event

    async def _attempt(self, event: WebhookEvent) -> Tuple[Optional[int], Optional[str]]:
        headers = {
            "Content-Type": "application/json",
            constants.DELIVERY_ID_HEADER: event.delivery_id,
            constants.EVENT_TOPIC_HEADER: event.topic,
        }
        if self.signer is not None:
            headers[constants.SIGNATURE_HEADER] = self.signer.sign(event.payload)

        try:
            response = await self.client.post(
                event.endpoint,
                content=jcs_canonicalize(event.payload),
                headers=headers,
                timeout=self.settings.webhook_timeout_seconds,
            )
        except httpx.TransportError as e:
            return None, f"{type(e).__name__}: {e}"
        return response.status_code, None

    async def _dead_letter(self, event: WebhookEvent) -> None:
        await self.store.move(constants.NS_WEBHOOKS, constants.NS_DEAD_LETTERS, event.delivery_id)
        logger.critical(
            f"Webhook {event.delivery_id} ({event.topic}) to {event.endpoint} dead-lettered "
            f"after {event.attempts} attempts: {event.last_error}"
        )
        if self._alert is not None:
            result = self._alert(event)
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    async def dead_letters(self) -> List[WebhookEvent]:
        events = [e for e, _ in await self.store.load_all(constants.NS_DEAD_LETTERS, WebhookEvent)]
        return sorted(events, key=lambda e: (e.created_at, e.sequence))

    async def redeliver(self, delivery_id: str) -> WebhookEvent:
        """Put a dead-lettered event back at the tail of its endpoint's queue."""
        loaded = await self.store.load(constants.NS_DEAD_LETTERS, delivery_id, WebhookEvent)
        if loaded is None:
            raise ResourceNotFoundError(f"Dead letter not found: {delivery_id}")
        event, _ = loaded

        async with self._enqueue_locks.hold(event.endpoint):
            event.status = WebhookStatus.PENDING
            event.attempts = 0
            event.sequence = await self._next_sequence(event.endpoint)
            await self.store.save(constants.NS_WEBHOOKS, delivery_id, event)
            await self.store.delete(constants.NS_DEAD_LETTERS, delivery_id)

        logger.info(f"Webhook {delivery_id} re-queued for {event.endpoint} as #{event.sequence}")
        self._wake(event.endpoint)
        return event
