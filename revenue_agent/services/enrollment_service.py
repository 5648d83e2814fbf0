"""Enrollment transitions and playbook outcomes, each followed by a CRM notification"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_agent.db.models import Account, Playbook, PlaybookOutcome
from revenue_agent.services.account_context import AccountNotFoundError
from revenue_agent.services.delivery_queue import DeliveryQueue

logger = logging.getLogger(__name__)


class EnrollmentService:
    def __init__(self, db: AsyncSession, delivery_queue: Optional[DeliveryQueue] = None):
        self.db = db
        self.delivery_queue = delivery_queue or DeliveryQueue()

    async def enroll(self, account_id: str, tenant_id: str) -> Account:
        """
        Move a discovered account into the growth program.

        Raises:
            AccountNotFoundError: unknown account
            ValueError: the account is already enrolled or graduated
        """
        result = await self.db.execute(
            select(Account).where(Account.id == account_id, Account.tenant_id == tenant_id)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id, tenant_id)
        if account.enrollment_status != "discovered":
            raise ValueError(f"Account {account_id} is already {account.enrollment_status}")

        account.enrollment_status = "enrolled"
        account.enrolled_at = datetime.utcnow()
        await self.db.commit()

        logger.info(f"[ENROLLMENT] Enrolled account {account_id} ({account.name})")
        await self.delivery_queue.notify_enrollment(tenant_id, account)
        return account

    async def record_outcome(
        self,
        playbook_id: str,
        tenant_id: str,
        action_taken: str,
        outcome_type: str,
        outcome_score: Optional[float] = None,
        revenue_impact: Optional[float] = None,
        rep_notes: Optional[str] = None,
    ) -> PlaybookOutcome:
        """
        Store what happened after a playbook was executed.

        Raises:
            LookupError: unknown playbook
        """
        result = await self.db.execute(
            select(Playbook).where(Playbook.id == playbook_id, Playbook.tenant_id == tenant_id)
        )
        playbook = result.scalar_one_or_none()
        if playbook is None:
            raise LookupError(f"Playbook {playbook_id} not found for tenant {tenant_id}")

        outcome = PlaybookOutcome(
            tenant_id=tenant_id,
            account_id=playbook.account_id,
            playbook_id=playbook.id,
            action_taken=action_taken,
            outcome_type=outcome_type,
            outcome_score=outcome_score,
            revenue_impact=revenue_impact,
            rep_notes=rep_notes,
        )
        self.db.add(outcome)
        await self.db.commit()
        await self.db.refresh(outcome)

        await self.delivery_queue.notify_outcome(
            tenant_id,
            playbook.account_id,
            playbook.id,
            action_taken,
            outcome_type,
            revenue_impact,
        )
        return outcome
