"""
Similarity Index - account embeddings and peer search.

Each account gets a short natural-language profile embedded into a vector
stored on the account row. find_similar compares one account's vector with
every other vector in the tenant and rewrites that account's A->B pairs.

A refresh is O(N) embedding calls and O(N^2) comparisons; fine for tens to
low hundreds of accounts per tenant, not beyond without an ANN index.
"""

import json
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, delete, func
from sqlalchemy.ext.asyncio import AsyncSession

from revenue_agent.db.models import Account, AccountMetrics, SimilarAccountPair
from revenue_agent.schemas import RefreshResult
from revenue_agent.services.account_context import AccountNotFoundError
from revenue_agent.services.embedding_service import EmbeddingService, get_embedding_service

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5


def build_profile_text(account: Account, metrics: Optional[AccountMetrics]) -> str:
    """Profile text that gets embedded for an account."""
    parts = [
        f"Contractor: {account.name}",
        f"Trade segment: {account.segment or 'unknown'}",
        f"Region: {account.region or 'unknown'}",
        f"Territory manager: {account.assigned_tm or 'unassigned'}",
    ]
    if metrics:
        parts.extend([
            f"Last 12 months revenue: ${metrics.last_12m_revenue or 0:,.0f}",
            f"Last 3 months revenue: ${metrics.last_3m_revenue or 0:,.0f}",
            f"YoY growth rate: {metrics.yoy_growth_rate or 0:g}%",
            f"Number of product categories purchased: {metrics.category_count or 0}",
        ])
    else:
        parts.append("No financial metrics available")
    return ". ".join(parts) + "."


class SimilarityService:
    """Embeds accounts and maintains SimilarAccountPair rows"""

    def __init__(self, db: AsyncSession, embedding_service: Optional[EmbeddingService] = None):
        self.db = db
        self.embedding_service = embedding_service or get_embedding_service()

    async def _get_account(self, account_id: str, tenant_id: str) -> Account:
        result = await self.db.execute(
            select(Account).where(Account.id == account_id, Account.tenant_id == tenant_id)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise AccountNotFoundError(account_id, tenant_id)
        return account

    async def _latest_metrics(self, account_id: str, tenant_id: str) -> Optional[AccountMetrics]:
        result = await self.db.execute(
            select(AccountMetrics)
            .where(AccountMetrics.account_id == account_id, AccountMetrics.tenant_id == tenant_id)
            .order_by(AccountMetrics.computed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def embed(self, account_id: str, tenant_id: str) -> List[float]:
        """Embed an account's profile and store the vector, replacing any prior one."""
        account = await self._get_account(account_id, tenant_id)
        metrics = await self._latest_metrics(account_id, tenant_id)

        vector = await self.embedding_service.embed(build_profile_text(account, metrics))

        account.embedding_json = json.dumps(vector)
        account.embedding_updated_at = datetime.utcnow()
        await self.db.commit()

        logger.info(f"[SIMILARITY] Embedded account {account_id} ({len(vector)} dims)")
        return vector

    async def find_similar(self, account_id: str, tenant_id: str, top_k: int = DEFAULT_TOP_K) -> None:
        """
        Recompute A->B pairs for one account.

        Existing pairs for the account are deleted and the top_k matches
        inserted in the same commit.

        Raises:
            ValueError: the account has no stored vector
        """
        target = await self._get_account(account_id, tenant_id)
        target_vector = EmbeddingService.embedding_from_json(target.embedding_json)
        if not target_vector:
            raise ValueError(f"Account {account_id} has no embedding")

        result = await self.db.execute(
            select(Account).where(
                Account.tenant_id == tenant_id,
                Account.id != account_id,
                Account.embedding_json.is_not(None),
            )
        )
        candidates = result.scalars().all()

        scored: List[Tuple[float, Account]] = []
        for candidate in candidates:
            vector = EmbeddingService.embedding_from_json(candidate.embedding_json)
            if not vector:
                continue
            score = EmbeddingService.cosine_similarity(target_vector, vector)
            scored.append((score, candidate))

        scored.sort(key=lambda pair: pair[0], reverse=True)
        matches = scored[:top_k]

        graduation_revenue = await self._revenue_for(
            [acc.id for _, acc in matches if acc.enrollment_status == "graduated"], tenant_id
        )

        await self.db.execute(
            delete(SimilarAccountPair).where(
                SimilarAccountPair.tenant_id == tenant_id,
                SimilarAccountPair.account_id_a == account_id,
            )
        )

        now = datetime.utcnow()
        for score, match in matches:
            graduated = match.enrollment_status == "graduated"
            self.db.add(SimilarAccountPair(
                tenant_id=tenant_id,
                account_id_a=account_id,
                account_id_b=match.id,
                similarity_score=score,
                shared_segment=match.segment if match.segment and match.segment == target.segment else None,
                shared_region=match.region if match.region and match.region == target.region else None,
                account_b_graduated=graduated,
                account_b_graduation_revenue=graduation_revenue.get(match.id) if graduated else None,
                computed_at=now,
            ))

        await self.db.commit()
        logger.info(f"[SIMILARITY] Stored {len(matches)} pairs for account {account_id}")

    async def _revenue_for(self, account_ids: List[str], tenant_id: str) -> dict:
        """Latest trailing-12-month revenue per account."""
        if not account_ids:
            return {}
        latest = (
            select(AccountMetrics.account_id, func.max(AccountMetrics.computed_at).label("latest"))
            .where(AccountMetrics.tenant_id == tenant_id, AccountMetrics.account_id.in_(account_ids))
            .group_by(AccountMetrics.account_id)
            .subquery()
        )
        result = await self.db.execute(
            select(AccountMetrics.account_id, AccountMetrics.last_12m_revenue).join(
                latest,
                (AccountMetrics.account_id == latest.c.account_id)
                & (AccountMetrics.computed_at == latest.c.latest),
            )
        )
        return {account_id: revenue for account_id, revenue in result.all()}

    async def refresh_all(self, tenant_id: str, top_k: int = DEFAULT_TOP_K) -> RefreshResult:
        """Re-embed then re-search every enrolled account; failures are skipped."""
        result = await self.db.execute(
            select(Account.id)
            .where(Account.tenant_id == tenant_id, Account.enrollment_status == "enrolled")
            .order_by(Account.created_at)
        )
        account_ids = list(result.scalars().all())

        outcome = RefreshResult()
        for account_id in account_ids:
            try:
                await self.embed(account_id, tenant_id)
                await self.find_similar(account_id, tenant_id, top_k=top_k)
                outcome.processed += 1
            except Exception as e:
                await self.db.rollback()
                outcome.failed += 1
                logger.error(f"[SIMILARITY] Refresh failed for account {account_id}: {e}")

        logger.info(
            f"[SIMILARITY] Tenant {tenant_id}: refreshed {outcome.processed} accounts, {outcome.failed} failed"
        )
        return outcome
