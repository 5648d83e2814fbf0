"""
Delivery Queue - durable outbox for CRM webhook events.

Every business event (enrollment, graduation, at-risk, outcome) is written
as a pending row first, then POSTed to the tenant's webhook. A row is sent
on the first 2xx; after MAX_ATTEMPTS failures it is marked failed. The
scheduled pass retries whatever is still pending.

notify() enqueues and immediately attempts one pass. Passes for a tenant are
serialized with a lock, status changes only apply to rows that are still
pending, and every POST carries the row's event id so the receiver can
deduplicate.
"""

import asyncio
import json
import logging
import weakref
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from revenue_agent.config import settings
from revenue_agent.db.database import async_session_maker
from revenue_agent.db.models import DeliveryQueueEntry, OrganizationSettings, Account
from revenue_agent.schemas import (
    DeliveryResult, EnrollmentPayload, GraduationPayload, AtRiskPayload, OutcomePayload,
    delivery_payload_adapter,
)
from revenue_agent.services.retry import RetryPolicy, execute

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5

PayloadLike = Union[EnrollmentPayload, GraduationPayload, AtRiskPayload, OutcomePayload, Dict[str, Any]]

# Per-tenant locks for each running event loop, shared by every DeliveryQueue instance
_tenant_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


class DeliveryQueue:
    """Outbox writer and webhook delivery worker"""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_maker,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.post_policy = RetryPolicy(max_attempts=1, timeout=settings.webhook_timeout)

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        for stale in [other for other in _tenant_locks if other.is_closed()]:
            del _tenant_locks[stale]
        locks = _tenant_locks.setdefault(loop, {})
        lock = locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            locks[tenant_id] = lock
        return lock

    async def enqueue(
        self,
        tenant_id: str,
        event_type: str,
        account_id: str,
        payload: PayloadLike,
    ) -> str:
        """
        Validate and store one event as pending.

        Raises:
            ValueError: payload doesn't validate, or its `event` tag differs from event_type
        """
        if isinstance(payload, dict):
            payload = delivery_payload_adapter.validate_python(payload)
        if payload.event != event_type:
            raise ValueError(f"Payload event {payload.event!r} does not match event type {event_type!r}")

        entry = DeliveryQueueEntry(
            tenant_id=tenant_id,
            event_type=event_type,
            account_id=account_id,
            payload_json=payload.model_dump_json(),
            status="pending",
            attempts=0,
        )
        async with self.session_factory() as session:
            session.add(entry)
            await session.commit()
            await session.refresh(entry)

        logger.info(f"[DELIVERY] Queued {event_type} event {entry.event_id} for account {account_id}")
        return entry.id

    async def _post(
        self,
        client: httpx.AsyncClient,
        url: str,
        secret: Optional[str],
        entry: DeliveryQueueEntry,
    ) -> None:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": settings.webhook_user_agent,
            "X-Event-Id": entry.event_id,
        }
        if secret:
            headers["X-Webhook-Secret"] = secret

        async def _call():
            return await client.post(
                url,
                content=entry.payload_json,
                headers=headers,
                timeout=settings.webhook_timeout,
            )

        # The queue's attempt counter is the retry budget; the executor only races the timeout
        response = await execute(_call, self.post_policy, label=f"webhook {entry.event_id}")
        if not response.is_success:
            raise httpx.HTTPStatusError(
                f"Webhook responded with {response.status_code}: {response.text[:200]}",
                request=response.request,
                response=response,
            )

    async def process_pending(self, tenant_id: str) -> DeliveryResult:
        """Attempt every pending row for a tenant once."""
        async with self._lock_for(tenant_id):
            return await self._process(tenant_id)

    async def _process(self, tenant_id: str) -> DeliveryResult:
        async with self.session_factory() as session:
            org = (await session.execute(
                select(OrganizationSettings).where(OrganizationSettings.tenant_id == tenant_id)
            )).scalar_one_or_none()

            if not org or not org.crm_webhook_url:
                logger.info(f"[DELIVERY] No webhook configured for tenant {tenant_id}, skipping")
                return DeliveryResult(skipped=True)
            url, secret = org.crm_webhook_url, org.crm_webhook_secret

            pending: List[DeliveryQueueEntry] = list((await session.execute(
                select(DeliveryQueueEntry)
                .where(DeliveryQueueEntry.tenant_id == tenant_id, DeliveryQueueEntry.status == "pending")
                .order_by(DeliveryQueueEntry.created_at)
            )).scalars().all())

        result = DeliveryResult()
        if not pending:
            return result

        client = self.http_client or httpx.AsyncClient()
        try:
            for entry in pending:
                await self._deliver_one(client, url, secret, entry, result)
        finally:
            if self.http_client is None:
                await client.aclose()

        logger.info(
            f"[DELIVERY] Tenant {tenant_id}: {result.sent} sent, {result.retried} pending retry, "
            f"{result.failed} failed"
        )
        return result

    async def _deliver_one(
        self,
        client: httpx.AsyncClient,
        url: str,
        secret: Optional[str],
        entry: DeliveryQueueEntry,
        result: DeliveryResult,
    ) -> None:
        now = datetime.utcnow()
        try:
            await self._post(client, url, secret, entry)
        except Exception as e:
            attempts = (entry.attempts or 0) + 1
            status = "failed" if attempts >= MAX_ATTEMPTS else "pending"
            async with self.session_factory() as session:
                await session.execute(
                    update(DeliveryQueueEntry)
                    .where(DeliveryQueueEntry.id == entry.id, DeliveryQueueEntry.status == "pending")
                    .values(status=status, attempts=attempts, last_error=str(e)[:1000], last_attempt_at=now)
                )
                await session.commit()
            if status == "failed":
                result.failed += 1
                logger.error(f"[DELIVERY] Event {entry.event_id} failed permanently after {attempts} attempts: {e}")
            else:
                result.retried += 1
                logger.warning(f"[DELIVERY] Event {entry.event_id} attempt {attempts} failed: {e}")
            return

        async with self.session_factory() as session:
            await session.execute(
                update(DeliveryQueueEntry)
                .where(DeliveryQueueEntry.id == entry.id, DeliveryQueueEntry.status == "pending")
                .values(
                    status="sent",
                    attempts=(entry.attempts or 0) + 1,
                    sent_at=now,
                    last_attempt_at=now,
                    last_error=None,
                )
            )
            await session.commit()
        result.sent += 1
        logger.info(f"[DELIVERY] Sent {entry.event_type} event {entry.event_id} for account {entry.account_id}")

    async def notify(
        self,
        tenant_id: str,
        event_type: str,
        account_id: str,
        payload: PayloadLike,
    ) -> Optional[str]:
        """Enqueue then try one delivery pass. Never raises."""
        try:
            entry_id = await self.enqueue(tenant_id, event_type, account_id, payload)
        except Exception as e:
            logger.error(f"[DELIVERY] Could not queue {event_type} for account {account_id}: {e}")
            return None

        try:
            await self.process_pending(tenant_id)
        except Exception as e:
            logger.warning(f"[DELIVERY] Immediate delivery pass failed for tenant {tenant_id}: {e}")
        return entry_id

    # ---------- convenience wrappers ----------

    async def notify_enrollment(self, tenant_id: str, account: Account) -> Optional[str]:
        return await self.notify(tenant_id, "enrollment", account.id, EnrollmentPayload(
            account_id=account.id,
            account_name=account.name,
            segment=account.segment,
            enrollment_status=account.enrollment_status,
            assigned_tm=account.assigned_tm,
        ))

    async def notify_graduation(self, tenant_id: str, account: Account, reason: str) -> Optional[str]:
        return await self.notify(tenant_id, "graduation", account.id, GraduationPayload(
            account_id=account.id,
            account_name=account.name,
            assigned_tm=account.assigned_tm,
            graduation_reason=reason,
        ))

    async def notify_at_risk(
        self, tenant_id: str, account: Account, risk_level: str, signals: List[str]
    ) -> Optional[str]:
        return await self.notify(tenant_id, "at_risk", account.id, AtRiskPayload(
            account_id=account.id,
            account_name=account.name,
            risk_level=risk_level,
            risk_signals=signals,
            assigned_tm=account.assigned_tm,
        ))

    async def notify_outcome(
        self,
        tenant_id: str,
        account_id: str,
        playbook_id: str,
        action_taken: str,
        outcome: str,
        revenue_impact: Optional[float] = None,
    ) -> Optional[str]:
        return await self.notify(tenant_id, "outcome", account_id, OutcomePayload(
            account_id=account_id,
            playbook_id=playbook_id,
            action_taken=action_taken,
            outcome=outcome,
            revenue_impact=revenue_impact,
        ))


def load_payload(entry: DeliveryQueueEntry) -> Dict[str, Any]:
    """Stored payload as a dict."""
    return json.loads(entry.payload_json)
