"""
Startup wiring of the classifier and drafter implementations.
"""

import logging
import random
from typing import Optional

from openai import OpenAI

from .classifier import Classifier, KeywordClassifier, LLMClassifier, build_client
from .config import AppConfig
from .drafter import LLMDrafter, ReplyDrafter, TemplateDrafter


logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when the configured provider cannot be built."""
    pass


def resolve_provider(config: AppConfig) -> str:
    """
    Resolve ``auto`` to a concrete provider name.

    Raises:
        ProviderError: For an unknown provider or a missing API key.
    """
    provider = config.provider.provider
    if provider == "auto":
        provider = "openai" if config.llm.api_key else "stub"
        logger.debug(f"Provider 'auto' resolved to '{provider}'")

    if provider not in ("stub", "openai"):
        raise ProviderError(f"Unknown provider '{provider}'")
    if provider == "openai" and not config.llm.api_key:
        raise ProviderError("OPENAI_API_KEY is required for the openai provider")
    return provider


def build_providers(
    config: AppConfig,
    client: Optional[OpenAI] = None,
) -> tuple[Classifier, ReplyDrafter]:
    """
    Build the classifier and drafter selected by the configuration.

    Args:
        config: Application configuration.
        client: Optional shared OpenAI client (tests inject a mock).

    Returns:
        Tuple of (classifier, drafter).
    """
    provider = resolve_provider(config)
    pipeline = config.pipeline

    if provider == "openai":
        if client is None:
            # Per-request timeouts come from each caller's own budget
            client = build_client(
                config.llm, timeout=max(pipeline.classify_timeout, pipeline.draft_timeout)
            )

        classifier: Classifier = LLMClassifier(
            config.llm,
            client=client,
            time_budget=pipeline.classify_timeout,
        )
        drafter: ReplyDrafter = LLMDrafter(
            config.llm,
            client=client,
            max_citations=pipeline.max_citations,
            snippet_length=pipeline.snippet_length,
            time_budget=pipeline.draft_timeout,
        )
    else:
        keyword_classifier = KeywordClassifier(
            jitter=config.provider.stub_confidence_jitter,
            rng=random.Random(config.provider.stub_random_seed),
        )
        classifier = keyword_classifier
        # Drafting picks its opening from the same deterministic scores
        drafter = TemplateDrafter(
            classifier=keyword_classifier,
            max_citations=pipeline.max_citations,
            snippet_length=pipeline.snippet_length,
        )

    logger.info(f"Using '{provider}' classifier and drafter")
    return classifier, drafter
