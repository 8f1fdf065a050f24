"""
Ticket classifiers for the triage pipeline.

Two interchangeable implementations of the ``Classifier`` interface:
- ``KeywordClassifier``: deterministic keyword scoring, no network access
- ``LLMClassifier``: OpenAI-compatible API with structured output

The orchestrator only depends on ``Classifier.classify``.
"""

import logging
import random
import time
from abc import ABC, abstractmethod
from typing import Any, Optional

from openai import OpenAI
from pydantic import BaseModel, Field
from tenacity import (
    RetryCallState,
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from .config import LLMConfig
from .models import Category, Classification, ModelInfo


logger = logging.getLogger(__name__)


PROMPT_VERSION = "1.0.0"

# Floor for the per-request timeout once a deadline is nearly spent
MIN_REQUEST_TIMEOUT = 0.05


class ClassificationError(Exception):
    """Error during ticket classification."""
    pass


class Classifier(ABC):
    """Maps ticket text to a category and a confidence score."""

    @abstractmethod
    def classify(self, text: str) -> Classification:
        """
        Classify ticket text.

        Raises:
            ClassificationError: If no classification can be produced.
        """


# Keyword lists per category; ``other`` has none and wins only by default.
CATEGORY_KEYWORDS: dict[Category, list[str]] = {
    Category.BILLING: [
        "refund", "invoice", "payment", "charge", "billing",
        "money", "cost", "price", "subscription", "cancel",
    ],
    Category.TECH: [
        "error", "bug", "crash", "issue", "problem",
        "not working", "broken", "stack", "code", "login",
    ],
    Category.SHIPPING: [
        "delivery", "shipment", "package", "tracking",
        "shipping", "order", "delayed", "arrived",
    ],
    Category.OTHER: [],
}


class KeywordClassifier(Classifier):
    """
    Deterministic stub classifier.

    For every category, score = matched keywords / keywords in category
    (substring match on the lowercased text). The best score wins and ties
    keep the earlier category; ``other`` is chosen when nothing matches.

    Confidence = clamp(score + length bonus + keyword bonus + noise, 0.1, 1.0)
    rounded to two decimals. Noise is only added when a non-zero ``jitter``
    is configured, drawn from the injected ``rng``.
    """

    PROVIDER = "stub"
    MODEL = "deterministic-v1"

    MIN_CONFIDENCE = 0.1
    MAX_CONFIDENCE = 1.0
    # Word count divisor and cap for the length bonus
    LENGTH_BONUS_WORDS = 50
    MAX_LENGTH_BONUS = 0.3
    KEYWORD_BONUS = 0.1

    def __init__(
        self,
        jitter: float = 0.0,
        rng: Optional[random.Random] = None,
        keywords: Optional[dict[Category, list[str]]] = None,
    ):
        if jitter < 0:
            raise ValueError("jitter must not be negative")
        self._jitter = jitter
        self._rng = rng or random.Random()
        self._keywords = keywords or CATEGORY_KEYWORDS

    def score_categories(self, text: str) -> tuple[Category, float, list[str]]:
        """
        Pick the best-scoring category.

        Returns:
            Tuple of (category, score, matched keywords).
        """
        lower_text = text.lower()
        best_category = Category.OTHER
        best_score = 0.0
        best_matches: list[str] = []

        for category in Category:
            words = self._keywords.get(category, [])
            if not words:
                continue
            matches = [word for word in words if word in lower_text]
            score = len(matches) / len(words)
            if score > best_score:
                best_category = category
                best_score = score
                best_matches = matches

        return best_category, best_score, best_matches

    def _noise(self) -> float:
        if not self._jitter:
            return 0.0
        return (self._rng.random() - 0.5) * self._jitter

    def classify(self, text: str) -> Classification:
        start = time.perf_counter()

        category, score, matches = self.score_categories(text)

        word_count = len(text.split())
        length_bonus = min(word_count / self.LENGTH_BONUS_WORDS, self.MAX_LENGTH_BONUS)
        keyword_bonus = len(matches) * self.KEYWORD_BONUS

        confidence = score + length_bonus + keyword_bonus + self._noise()
        confidence = max(self.MIN_CONFIDENCE, min(self.MAX_CONFIDENCE, confidence))
        confidence = round(confidence, 2)

        latency_ms = int((time.perf_counter() - start) * 1000)

        logger.debug(
            f"Stub classified as {category.value} (score: {score:.2f}, "
            f"confidence: {confidence:.2f}, matches: {matches})"
        )

        return Classification(
            predicted_category=category,
            confidence=confidence,
            model_info=ModelInfo(
                provider=self.PROVIDER,
                model=self.MODEL,
                prompt_version=PROMPT_VERSION,
                latency_ms=latency_ms,
                matched_keywords=matches,
            ),
        )


class LLMClassificationResponse(BaseModel):
    """Structured output schema for LLM classification."""

    category: str = Field(
        description="One of: billing, tech, shipping, other"
    )
    confidence: float = Field(
        ge=0.0,
        le=1.0,
        description="Confidence score from 0 to 1"
    )
    reasoning: str = Field(
        description="Brief explanation for why this category was chosen"
    )


SYSTEM_PROMPT = """You are a customer support triage assistant.

Classify each support ticket into exactly one category:

- billing: payments, charges, refunds, invoices, subscriptions, cancellations
- tech: errors, crashes, bugs, login problems, features not working
- shipping: deliveries, packages, tracking, delayed or missing orders
- other: anything that does not clearly fit the categories above

## Confidence Scoring:
   - 0.9-1.0: The ticket clearly belongs to one category
   - 0.7-0.9: Good match, minor interpretation needed
   - 0.5-0.7: Reasonable guess, several categories possible
   - <0.5: Uncertain, using best effort

Use the exact lowercase category names listed above. Explain your choice in one sentence."""


def build_user_prompt(text: str) -> str:
    """
    Build the user prompt for classification.

    Args:
        text: Ticket title and description.

    Returns:
        Formatted prompt string.
    """
    return f"""## TICKET TO CLASSIFY:

{text}

---

Analyze this ticket and provide the classification."""


# ========== Shared client plumbing ==========

def build_client(config: LLMConfig, timeout: Optional[float] = None) -> OpenAI:
    """
    Build an OpenAI client from the LLM configuration.

    With a ``timeout`` the client's own retries are disabled: the tenacity
    policy on each request is then the only retry loop and it stays inside
    the caller's time budget.
    """
    client_kwargs: dict[str, Any] = {
        "api_key": config.api_key,
        "max_retries": config.max_retries,
    }
    if config.api_base_url:
        client_kwargs["base_url"] = config.api_base_url
    if timeout is not None:
        client_kwargs["timeout"] = timeout
        client_kwargs["max_retries"] = 0
    return OpenAI(**client_kwargs)


def deadline_after(budget: Optional[float]) -> Optional[float]:
    """Monotonic deadline ``budget`` seconds from now, or None for no budget."""
    if budget is None:
        return None
    return time.monotonic() + budget


def timeout_kwargs(deadline: Optional[float]) -> dict[str, float]:
    """Per-request ``timeout`` for the time left before ``deadline``."""
    if deadline is None:
        return {}
    return {"timeout": max(deadline - time.monotonic(), MIN_REQUEST_TIMEOUT)}


def stop_at_deadline(retry_state: RetryCallState) -> bool:
    """Stop retrying when the next attempt would start after the call's deadline."""
    deadline = retry_state.kwargs.get("deadline")
    if deadline is None:
        return False
    return time.monotonic() + retry_state.upcoming_sleep >= deadline


class LLMClassifier(Classifier):
    """
    Classifier backed by an OpenAI-compatible chat model.

    Unknown category names returned by the model degrade to ``other``;
    confidences are clamped into [0, 1].
    """

    PROVIDER = "openai"

    def __init__(
        self,
        config: LLMConfig,
        client: Optional[OpenAI] = None,
        time_budget: Optional[float] = None,
    ):
        """
        Initialize the classifier.

        Args:
            config: LLM configuration.
            client: Optional pre-built client (tests inject a mock).
            time_budget: Seconds one ``classify`` call may spend across all
                attempts. None leaves requests unbounded.
        """
        self._config = config
        self._time_budget = time_budget
        self._client = client or build_client(config, timeout=time_budget)

        logger.info(f"Initialized LLM classifier with model: {config.model}")

    @staticmethod
    def _normalize_category(name: str) -> Category:
        try:
            return Category(name.strip().lower())
        except ValueError:
            logger.warning(f"Model returned unknown category '{name}', using 'other'")
            return Category.OTHER

    @retry(
        stop=stop_after_attempt(3) | stop_at_deadline,
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((Exception,)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"Retrying classification after error: {retry_state.outcome.exception()}"
        ),
    )
    def _request(self, text: str, deadline: Optional[float] = None) -> LLMClassificationResponse:
        response = self._client.chat.completions.parse(
            model=self._config.model,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(text)},
            ],
            response_format=LLMClassificationResponse,
            **timeout_kwargs(deadline),
        )

        parsed = response.choices[0].message.parsed
        if not parsed:
            raise ClassificationError("Empty classification response")
        return parsed

    def classify(self, text: str) -> Classification:
        start = time.perf_counter()

        try:
            parsed = self._request(text, deadline=deadline_after(self._time_budget))
        except Exception as e:
            logger.error(f"Classification error: {e}")
            raise ClassificationError(f"Failed to classify ticket: {e}") from e

        latency_ms = int((time.perf_counter() - start) * 1000)
        confidence = round(max(0.0, min(1.0, parsed.confidence)), 2)

        result = Classification(
            predicted_category=self._normalize_category(parsed.category),
            confidence=confidence,
            model_info=ModelInfo(
                provider=self.PROVIDER,
                model=self._config.model,
                prompt_version=PROMPT_VERSION,
                latency_ms=latency_ms,
            ),
        )

        logger.debug(
            f"Classified as {result.predicted_category.value} "
            f"(confidence: {result.confidence:.2f}): {parsed.reasoning}"
        )

        return result
