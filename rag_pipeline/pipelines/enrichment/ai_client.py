"""OpenAI-backed text generation and embeddings for document enrichment."""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import openai
from openai import AsyncOpenAI

from rag_pipeline.core.config import Settings, settings
from rag_pipeline.core.errors import AIServiceError
from rag_pipeline.core.retry import retry_with_backoff
from rag_pipeline.pipelines.models import AIResults, utc_now

# Failures worth another attempt; anything else (auth, bad request) is raised at once
TRANSIENT_AI_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    AIServiceError,
)

TITLE_INPUT_CHARS = 2000
SUMMARY_INPUT_CHARS = 3000
KEYWORDS_INPUT_CHARS = 2000
CATEGORY_INPUT_CHARS = 1500

_KEYWORD_SEPARATORS = re.compile(r"[,，、;；\n]+")


class AIClient:
    """Generates AI-derived document fields and embeddings.

    Inputs are truncated before every call, and every call is retried with
    exponential backoff on transient provider errors.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        client: Optional[AsyncOpenAI] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self._settings = config or settings
        self._client = client
        self._logger = logger or logging.getLogger(__name__)

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            # Retries are handled here so backoff is consistent across providers
            self._client = AsyncOpenAI(
                api_key=self._settings.openai_api_key,
                base_url=self._settings.openai_base_url,
                timeout=self._settings.llm_timeout,
                max_retries=0,
            )
        return self._client

    async def initialize(self) -> None:
        await self.test_connection()
        self._logger.info("AI client initialized")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def test_connection(self) -> None:
        """Raise if the provider cannot be reached with the configured key."""
        await self.client.models.list()

    async def _with_retry(self, func, operation: str):
        return await retry_with_backoff(
            func,
            max_retries=self._settings.llm_max_retries,
            initial_delay=self._settings.llm_initial_delay,
            backoff_factor=self._settings.llm_backoff_factor,
            max_delay=self._settings.llm_max_delay,
            retry_on=TRANSIENT_AI_ERRORS,
            operation=operation,
            logger=self._logger,
        )

    async def generate_text(
        self,
        prompt: str,
        *,
        max_tokens: int = 200,
        temperature: float = 0.3,
        operation: str = "text generation",
    ) -> str:
        """Run a single-prompt chat completion and return the stripped text."""

        async def _call() -> str:
            response = await self.client.chat.completions.create(
                model=self._settings.openai_model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
            text = ""
            if response.choices:
                text = (response.choices[0].message.content or "").strip()
            if not text:
                raise AIServiceError(f"Empty response from {operation}")
            return text

        return await self._with_retry(_call, operation)

    async def generate_title(self, content: str, original_title: str = "") -> str:
        prompt = f"""Write a concise, meaningful title for the document below.

Original title: {original_title or "none"}

Document content:
{content[:TITLE_INPUT_CHARS]}

Requirements:
1. At most 20 words
2. Capture the core topic of the document
3. Keep the original title if it is already appropriate

Return only the title."""
        title = await self.generate_text(
            prompt, max_tokens=100, temperature=0.3, operation="title generation"
        )
        return title.strip().strip("\"'")

    async def generate_summary(self, content: str) -> str:
        prompt = f"""Summarize the document below in 2-4 sentences.

Document content:
{content[:SUMMARY_INPUT_CHARS]}

Return only the summary."""
        return await self.generate_text(
            prompt, max_tokens=300, temperature=0.3, operation="summary generation"
        )

    async def extract_keywords(self, content: str) -> List[str]:
        count = self._settings.max_keywords
        prompt = f"""Extract the {count} most relevant keywords from the document below.

Document content:
{content[:KEYWORDS_INPUT_CHARS]}

Return only the keywords, separated by commas."""
        text = await self.generate_text(
            prompt, max_tokens=100, temperature=0.2, operation="keyword extraction"
        )
        return parse_keywords(text, limit=count)

    async def classify(self, content: str) -> str:
        categories = self._settings.document_categories
        prompt = f"""Classify the document below into exactly one of these categories:
{", ".join(categories)}

Document content:
{content[:CATEGORY_INPUT_CHARS]}

Return only the category name."""
        text = await self.generate_text(
            prompt, max_tokens=20, temperature=0.0, operation="classification"
        )
        return match_category(text, categories, self._settings.default_category)

    async def enrich(self, content: str, title: str = "") -> AIResults:
        """Produce every AI-derived field for one document.

        The four calls run concurrently and succeed or fail as one unit.
        """
        ai_title, summary, keywords, category = await asyncio.gather(
            self.generate_title(content, title),
            self.generate_summary(content),
            self.extract_keywords(content),
            self.classify(content),
        )
        return AIResults(
            ai_title=ai_title,
            summary=summary,
            keywords=keywords,
            category=category,
            processed_at=utc_now(),
        )

    async def embed(self, text: str) -> List[float]:
        """Embed ``text`` (truncated to the configured maximum length)."""
        text = text[: self._settings.embedding_max_chars]
        if not text.strip():
            raise ValueError("Cannot embed empty text")

        async def _call() -> List[float]:
            response = await self.client.embeddings.create(
                model=self._settings.embedding_model, input=text
            )
            if not response.data:
                raise AIServiceError("Empty embedding response")
            return list(response.data[0].embedding)

        vector = await self._with_retry(_call, "embedding")
        if len(vector) != self._settings.vector_dim:
            raise ValueError(
                f"Embedding has {len(vector)} dimensions, expected {self._settings.vector_dim}"
            )
        return vector

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self.test_connection()
            return {"status": "healthy", "model": self._settings.openai_model}
        except Exception as e:
            self._logger.error(f"AI health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}


def parse_keywords(text: str, limit: int) -> List[str]:
    """Split a model's keyword reply into a de-duplicated list."""
    keywords: List[str] = []
    for raw in _KEYWORD_SEPARATORS.split(text):
        keyword = raw.strip().strip("-*.\"'").strip()
        if keyword and keyword not in keywords:
            keywords.append(keyword)
    return keywords[:limit]


def match_category(text: str, categories: List[str], default: str) -> str:
    """Map a model's reply onto one of the allowed categories."""
    reply = text.strip().strip(".\"'").lower()
    for category in categories:
        if reply == category.lower():
            return category
    for category in categories:
        if category.lower() in reply:
            return category
    return default
