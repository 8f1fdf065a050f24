"""
Reply drafters for the triage pipeline.

``TemplateDrafter`` assembles a templated reply that cites the retrieved
articles; ``LLMDrafter`` asks an OpenAI-compatible model to write it. Both
return the ids of the articles the reply actually cites.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from openai import OpenAI
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from .classifier import (
    PROMPT_VERSION,
    KeywordClassifier,
    build_client,
    deadline_after,
    stop_at_deadline,
    timeout_kwargs,
)
from .config import LLMConfig
from .models import Article, Category, DraftResult, ModelInfo


logger = logging.getLogger(__name__)


class DraftError(Exception):
    """Error while drafting a reply."""
    pass


class ReplyDrafter(ABC):
    """Drafts a customer-facing reply from ticket text and articles."""

    @abstractmethod
    def draft(self, text: str, articles: list[Article]) -> DraftResult:
        """
        Draft a reply.

        Raises:
            DraftError: If no draft can be produced.
        """


OPENINGS: dict[Category, str] = {
    Category.BILLING: "Thank you for contacting us regarding your billing concern. ",
    Category.TECH: "Thank you for reporting this technical issue. ",
    Category.SHIPPING: "Thank you for contacting us about your shipment. ",
    Category.OTHER: "Thank you for contacting our support team. ",
}

RESOURCES_INTRO = "Based on our knowledge base, here are some resources that might help:\n\n"
FURTHER_HELP = (
    "If these resources don't resolve your issue, please let us know and "
    "we'll be happy to assist you further.\n\n"
)
LOOKING_INTO_IT = "We're looking into your request and will get back to you shortly.\n\n"
SIGNATURE = "Best regards,\nSupport Team"


def snippet(body: str, length: int) -> str:
    """Leading ``length`` characters of ``body``, with an ellipsis if cut."""
    if len(body) > length:
        return body[:length] + "..."
    return body


class TemplateDrafter(ReplyDrafter):
    """
    Deterministic stub drafter.

    The opening sentence depends on the category the keyword classifier
    assigns to the text; up to ``max_citations`` articles are listed with a
    body snippet.
    """

    PROVIDER = "stub"
    MODEL = "deterministic-v1"

    def __init__(
        self,
        classifier: Optional[KeywordClassifier] = None,
        max_citations: int = 3,
        snippet_length: int = 150,
    ):
        self._classifier = classifier or KeywordClassifier()
        self._max_citations = max_citations
        self._snippet_length = snippet_length

    def draft(self, text: str, articles: list[Article]) -> DraftResult:
        start = time.perf_counter()

        category, _, _ = self._classifier.score_categories(text)
        parts = [OPENINGS.get(category, OPENINGS[Category.OTHER])]

        cited = articles[: self._max_citations]
        if cited:
            parts.append(RESOURCES_INTRO)
            for index, article in enumerate(cited, 1):
                parts.append(f"{index}. {article.title}\n")
                parts.append(f"   {snippet(article.body, self._snippet_length)}\n\n")
            parts.append(FURTHER_HELP)
        else:
            parts.append(LOOKING_INTO_IT)

        parts.append(SIGNATURE)

        latency_ms = int((time.perf_counter() - start) * 1000)

        return DraftResult(
            draft_reply="".join(parts),
            citations=[article.id for article in cited],
            model_info=ModelInfo(
                provider=self.PROVIDER,
                model=self.MODEL,
                prompt_version=PROMPT_VERSION,
                latency_ms=latency_ms,
            ),
        )


DRAFT_SYSTEM_PROMPT = """You are a friendly customer support agent writing the first reply to a support ticket.

Guidelines:
1. Acknowledge the customer's problem in one sentence
2. When knowledge base articles are provided, point the customer to the relevant ones by their number [1], [2], ...
3. Only use information from the provided articles; never invent policies, prices or dates
4. If no article applies, tell the customer the team is looking into their request
5. Keep the reply under 200 words and sign it "Support Team"
"""


def build_draft_prompt(text: str, articles: list[Article], snippet_length: int) -> str:
    """
    Build the user prompt for drafting.

    Args:
        text: Ticket title and description.
        articles: Articles to offer the model, already truncated.
        snippet_length: Characters of each article body to include.

    Returns:
        Formatted prompt string.
    """
    if articles:
        context = "\n\n".join(
            f"[{index}] {article.title}\n{snippet(article.body, snippet_length)}"
            for index, article in enumerate(articles, 1)
        )
    else:
        context = "No knowledge base articles found."

    return f"""## KNOWLEDGE BASE ARTICLES:

{context}

---

## TICKET:

{text}

---

Write the reply to the customer."""


class LLMDrafter(ReplyDrafter):
    """Drafter backed by an OpenAI-compatible chat model."""

    PROVIDER = "openai"

    def __init__(
        self,
        config: LLMConfig,
        client: Optional[OpenAI] = None,
        max_citations: int = 3,
        snippet_length: int = 150,
        time_budget: Optional[float] = None,
    ):
        self._config = config
        self._max_citations = max_citations
        # The model sees more context than a template snippet
        self._snippet_length = snippet_length * 4
        self._time_budget = time_budget
        self._client = client or build_client(config, timeout=time_budget)

        logger.info(f"Initialized LLM drafter with model: {config.model}")

    @retry(
        stop=stop_after_attempt(3) | stop_at_deadline,
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((Exception,)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Retrying draft after error: {retry_state.outcome.exception()}"
        ),
    )
    def _request(self, prompt: str, deadline: Optional[float] = None) -> str:
        response = self._client.chat.completions.create(
            model=self._config.model,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            messages=[
                {"role": "system", "content": DRAFT_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            **timeout_kwargs(deadline),
        )

        content = response.choices[0].message.content
        if not content or not content.strip():
            raise DraftError("Empty draft response")
        return content.strip()

    def draft(self, text: str, articles: list[Article]) -> DraftResult:
        start = time.perf_counter()
        cited = articles[: self._max_citations]

        try:
            reply = self._request(
                build_draft_prompt(text, cited, self._snippet_length),
                deadline=deadline_after(self._time_budget),
            )
        except Exception as e:
            logger.error(f"Draft generation error: {e}")
            raise DraftError(f"Failed to draft reply: {e}") from e

        latency_ms = int((time.perf_counter() - start) * 1000)

        return DraftResult(
            draft_reply=reply,
            citations=[article.id for article in cited],
            model_info=ModelInfo(
                provider=self.PROVIDER,
                model=self._config.model,
                prompt_version=PROMPT_VERSION,
                latency_ms=latency_ms,
            ),
        )
