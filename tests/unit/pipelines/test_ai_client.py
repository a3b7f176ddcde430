"""Tests for the OpenAI-backed enrichment client."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from rag_pipeline.core.errors import AIServiceError
from rag_pipeline.pipelines.enrichment.ai_client import AIClient, match_category, parse_keywords
from tests.fakes import make_settings


def completion(text):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text))])


def embedding_response(vector):
    return SimpleNamespace(data=[SimpleNamespace(embedding=vector)])


def reply_by_prompt(**kwargs):
    prompt = kwargs["messages"][0]["content"]
    if prompt.startswith("Write a concise"):
        return completion('"Deploying the Service"')
    if prompt.startswith("Summarize"):
        return completion("How to deploy the service.")
    if prompt.startswith("Extract"):
        return completion("deploy, service, Deploy, ops")
    return completion("user manual.")


@pytest.fixture
def openai_client():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=reply_by_prompt)
    client.embeddings.create = AsyncMock(return_value=embedding_response([0.1, 0.2, 0.3, 0.4]))
    client.models.list = AsyncMock(return_value=[])
    client.close = AsyncMock()
    return client


@pytest.fixture
def ai_client(openai_client):
    return AIClient(make_settings(max_keywords=3), client=openai_client)


class TestHelpers:
    def test_parse_keywords_deduplicates_and_limits(self):
        assert parse_keywords("a, b，c、a\n- d", limit=3) == ["a", "b", "c"]

    def test_match_category(self):
        categories = ["User Manual", "API Documentation", "Other"]
        assert match_category("user manual", categories, "Other") == "User Manual"
        assert match_category("This is API Documentation.", categories, "Other") == (
            "API Documentation"
        )
        assert match_category("cooking", categories, "Other") == "Other"


class TestAIClient:
    @pytest.mark.asyncio
    async def test_enrich_produces_every_field(self, ai_client, openai_client):
        results = await ai_client.enrich("Deploy the service with the CLI.", "deploy")

        assert results.ai_title == "Deploying the Service"
        assert results.summary == "How to deploy the service."
        assert results.keywords == ["deploy", "service", "Deploy"]
        assert results.category == "User Manual"
        assert openai_client.chat.completions.create.await_count == 4

    @pytest.mark.asyncio
    async def test_inputs_are_truncated(self, ai_client, openai_client):
        await ai_client.generate_summary("x" * 10_000)
        prompt = openai_client.chat.completions.create.await_args.kwargs["messages"][0]["content"]
        assert "x" * 3000 in prompt
        assert "x" * 3001 not in prompt

    @pytest.mark.asyncio
    async def test_empty_reply_is_retried(self, ai_client, openai_client):
        openai_client.chat.completions.create = AsyncMock(
            side_effect=[completion(""), completion("Title")]
        )
        assert await ai_client.generate_title("content") == "Title"
        assert openai_client.chat.completions.create.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_empty_reply_raises(self, ai_client, openai_client):
        openai_client.chat.completions.create = AsyncMock(return_value=completion(""))
        with pytest.raises(AIServiceError):
            await ai_client.generate_summary("content")
        # First attempt plus llm_max_retries
        assert openai_client.chat.completions.create.await_count == 3

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, ai_client, openai_client):
        openai_client.chat.completions.create = AsyncMock(side_effect=KeyError("bad"))
        with pytest.raises(KeyError):
            await ai_client.generate_summary("content")
        assert openai_client.chat.completions.create.await_count == 1

    @pytest.mark.asyncio
    async def test_embed(self, ai_client, openai_client):
        assert await ai_client.embed("hello") == [0.1, 0.2, 0.3, 0.4]
        kwargs = openai_client.embeddings.create.await_args.kwargs
        assert kwargs["model"] == "text-embedding-3-small"

    @pytest.mark.asyncio
    async def test_embed_truncates_input(self, openai_client):
        client = AIClient(make_settings(embedding_max_chars=10), client=openai_client)
        await client.embed("y" * 50)
        assert openai_client.embeddings.create.await_args.kwargs["input"] == "y" * 10

    @pytest.mark.asyncio
    async def test_embed_rejects_empty_text_and_wrong_dimensions(self, ai_client, openai_client):
        with pytest.raises(ValueError):
            await ai_client.embed("   ")
        openai_client.embeddings.create = AsyncMock(return_value=embedding_response([0.1]))
        with pytest.raises(ValueError, match="dimensions"):
            await ai_client.embed("hello")

    @pytest.mark.asyncio
    async def test_health_check(self, ai_client, openai_client):
        assert (await ai_client.health_check())["status"] == "healthy"
        openai_client.models.list = AsyncMock(side_effect=RuntimeError("401"))
        assert (await ai_client.health_check())["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_close_releases_client(self, ai_client, openai_client):
        await ai_client.close()
        openai_client.close.assert_awaited_once()
