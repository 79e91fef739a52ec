"""Tests for the RAG orchestrator."""

import pytest

from conftest import DIM, FakeEmbedder, FakeLLM, product, unit
from shopchat.errors import EmbeddingDimensionError, ExternalServiceError
from shopchat.rag.context import ContextComposer
from shopchat.rag.engine import APOLOGY_REPLY, RagOrchestrator
from shopchat.rag.enhancer import QueryEnhancer
from shopchat.rag.search import HybridSearch


@pytest.fixture
async def seeded(catalog_repo, binding_repo):
    await binding_repo.add_tenant("T1")
    await binding_repo.add_tenant("T2")
    await catalog_repo.add_product(product("t1-shirt", "T1", "Red Shirt", unit(0), price=20))
    await catalog_repo.add_product(
        product("t2-shirt", "T2", "Crimson Shirt Secret Edition", unit(0), price=99)
    )
    return catalog_repo


def _orchestrator(catalog_repo, llm, embedder):
    search = HybridSearch(catalog_repo, dimension=DIM)
    return RagOrchestrator(
        QueryEnhancer(llm, model="m"),
        embedder,
        ContextComposer(search, llm, model="m"),
    )


async def test_answer_runs_every_stage(seeded):
    llm = FakeLLM()
    embedder = FakeEmbedder(vectors={"red shirt": unit(0)})

    answer = await _orchestrator(seeded, llm, embedder).answer(["T1"], "any red shirts?")

    assert answer.failed is False
    assert answer.reply == "We have the Red Shirt for $20."
    assert answer.query.optimized == "red shirt"
    assert embedder.calls == ["red shirt"]
    assert [p.product.id for p in answer.products] == ["t1-shirt"]


async def test_other_tenants_never_reach_the_prompt(seeded):
    llm = FakeLLM()
    embedder = FakeEmbedder(vectors={"red shirt": unit(0)})

    answer = await _orchestrator(seeded, llm, embedder).answer(["T1"], "shirt")

    assert all(p.product.tenant_id == "T1" for p in answer.products)
    system = llm.answer_calls[0]["system"]
    assert "Secret Edition" not in system
    assert "$99" not in system


async def test_completion_failure_returns_apology(seeded):
    llm = FakeLLM(answer_reply=ExternalServiceError("llm", "bad gateway", status=502))

    answer = await _orchestrator(seeded, llm, FakeEmbedder()).answer(["T1"], "red shirt")

    assert answer.failed is True
    assert answer.reply == APOLOGY_REPLY


async def test_embedding_failure_returns_apology(seeded):
    embedder = FakeEmbedder()
    embedder.error = ExternalServiceError("embedding", "quota", status=403)

    reply = await _orchestrator(seeded, FakeLLM(), embedder).run(["T1"], "red shirt")

    assert reply == APOLOGY_REPLY


async def test_wrong_dimension_returns_apology(seeded):
    embedder = FakeEmbedder(vectors={"red shirt": [1.0, 0.0]})
    llm = FakeLLM()

    reply = await _orchestrator(seeded, llm, embedder).run(["T1"], "red shirt")

    assert reply == APOLOGY_REPLY
    assert llm.answer_calls == []


async def test_enhancer_failure_does_not_fail_pipeline(seeded):
    llm = FakeLLM(enhance_reply=ExternalServiceError("llm", "down", status=500))
    embedder = FakeEmbedder(vectors={"red shirt please": unit(0)})

    answer = await _orchestrator(seeded, llm, embedder).answer(["T1"], "red shirt please")

    assert answer.failed is False
    assert answer.query.optimized == "red shirt please"
    assert embedder.calls == ["red shirt please"]


async def test_conversation_context_is_forwarded(seeded):
    llm = FakeLLM()

    await _orchestrator(seeded, llm, FakeEmbedder()).run(
        ["T1"], "how much?", "User: red shirt\nBot: we have one"
    )

    assert "RECENT CONVERSATION:\nUser: red shirt" in llm.answer_calls[0]["system"]


def test_dimension_error_message():
    err = EmbeddingDimensionError(1408, 768)
    assert "1408" in str(err) and "768" in str(err)
