"""
Tests for the similarity index
"""

import json

import pytest
from sqlalchemy import select

from revenue_agent.db.models import Account, SimilarAccountPair
from revenue_agent.services.account_context import AccountNotFoundError
from revenue_agent.services.similarity_service import SimilarityService, build_profile_text

from fakes import FakeEmbedding, TENANT, seed_account, seed_metrics

pytestmark = pytest.mark.usefixtures("setup_database")


async def _pairs_for(db, account_id):
    result = await db.execute(
        select(SimilarAccountPair)
        .where(SimilarAccountPair.account_id_a == account_id)
        .order_by(SimilarAccountPair.similarity_score.desc())
    )
    return result.scalars().all()


@pytest.mark.asyncio
async def test_refresh_ranks_graduated_peers(db_session):
    """A is closer to B than to C; both pairs carry graduation status and revenue."""
    a = await seed_account(db_session, "Alpha Plumbing", enrollment_status="enrolled")
    b = await seed_account(db_session, "Bravo Plumbing", enrollment_status="graduated",
                           embedding_json=json.dumps([1.0, 0.0, 0.0]))
    c = await seed_account(db_session, "Charlie HVAC", enrollment_status="graduated", segment="hvac",
                           embedding_json=json.dumps([0.0, 1.0, 0.0]))
    await seed_metrics(db_session, b, 200_000.0)
    await seed_metrics(db_session, c, 150_000.0)

    service = SimilarityService(db_session, embedding_service=FakeEmbedding(default=[0.9, 0.3, 0.0]))
    outcome = await service.refresh_all(TENANT)

    assert outcome.processed == 1
    assert outcome.failed == 0

    pairs = await _pairs_for(db_session, a.id)
    assert [p.account_id_b for p in pairs] == [b.id, c.id]
    assert pairs[0].similarity_score > pairs[1].similarity_score
    assert all(p.account_b_graduated for p in pairs)
    assert pairs[0].account_b_graduation_revenue == 200_000.0
    assert pairs[1].account_b_graduation_revenue == 150_000.0
    assert pairs[0].shared_segment == "plumbing"
    assert pairs[1].shared_segment is None


@pytest.mark.asyncio
async def test_find_similar_replaces_previous_pairs(db_session):
    a = await seed_account(db_session, "Alpha", embedding_json=json.dumps([1.0, 0.0]))
    await seed_account(db_session, "Bravo", embedding_json=json.dumps([1.0, 0.1]))
    await seed_account(db_session, "Charlie", embedding_json=json.dumps([0.0, 1.0]))
    service = SimilarityService(db_session, embedding_service=FakeEmbedding())

    await service.find_similar(a.id, TENANT, top_k=2)
    await service.find_similar(a.id, TENANT, top_k=1)

    pairs = await _pairs_for(db_session, a.id)
    assert len(pairs) == 1
    assert pairs[0].account_b_graduated is False
    assert pairs[0].account_b_graduation_revenue is None


@pytest.mark.asyncio
async def test_find_similar_ignores_other_tenants(db_session):
    a = await seed_account(db_session, "Alpha", embedding_json=json.dumps([1.0, 0.0]))
    await seed_account(db_session, "Foreign", tenant_id="tenant-2", embedding_json=json.dumps([1.0, 0.0]))

    await SimilarityService(db_session, embedding_service=FakeEmbedding()).find_similar(a.id, TENANT)

    assert await _pairs_for(db_session, a.id) == []


@pytest.mark.asyncio
async def test_find_similar_without_vector_raises(db_session):
    a = await seed_account(db_session, "Alpha")

    with pytest.raises(ValueError):
        await SimilarityService(db_session, embedding_service=FakeEmbedding()).find_similar(a.id, TENANT)


@pytest.mark.asyncio
async def test_embed_overwrites_vector(db_session):
    a = await seed_account(db_session, "Alpha", embedding_json=json.dumps([0.0, 1.0]))
    await seed_metrics(db_session, a, 150_000.0)
    embeddings = FakeEmbedding(default=[0.5, 0.5])

    vector = await SimilarityService(db_session, embedding_service=embeddings).embed(a.id, TENANT)

    assert vector == [0.5, 0.5]
    refreshed = await db_session.get(Account, a.id)
    assert json.loads(refreshed.embedding_json) == [0.5, 0.5]
    assert "Last 12 months revenue: $150,000" in embeddings.texts[0]


@pytest.mark.asyncio
async def test_embed_unknown_account(db_session):
    with pytest.raises(AccountNotFoundError):
        await SimilarityService(db_session, embedding_service=FakeEmbedding()).embed("missing", TENANT)


@pytest.mark.asyncio
async def test_refresh_skips_failing_account(db_session):
    await seed_account(db_session, "Alpha")
    await seed_account(db_session, "Bravo")
    embeddings = FakeEmbedding(fail_for=["Bravo"])

    outcome = await SimilarityService(db_session, embedding_service=embeddings).refresh_all(TENANT)

    assert outcome.processed == 1
    assert outcome.failed == 1


@pytest.mark.asyncio
async def test_profile_text_without_metrics():
    account = Account(tenant_id=TENANT, name="Delta Heating", segment="hvac", region=None, assigned_tm=None)
    text = build_profile_text(account, None)
    assert "Contractor: Delta Heating" in text
    assert "No financial metrics available" in text
