"""
Configuration module for the ticket triage pipeline.

Handles deployment settings through environment variables with secure
defaults. The operator-tunable triage policy lives in the ConfigStore
(see ``ticket_triage.models.TriageConfig``), not here.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# Load environment variables from .env file
load_dotenv()


def _optional_int(name: str) -> Optional[int]:
    value = os.getenv(name, "").strip()
    return int(value) if value else None


@dataclass(frozen=True)
class LLMConfig:
    """Configuration for the external model API (OpenAI compatible)."""

    api_key: str = field(
        default_factory=lambda: os.getenv("OPENAI_API_KEY", "")
    )
    api_base_url: Optional[str] = field(
        default_factory=lambda: os.getenv("OPENAI_API_BASE", None)
    )
    model: str = field(
        default_factory=lambda: os.getenv("LLM_MODEL", "gpt-4o-mini")
    )
    temperature: float = field(
        default_factory=lambda: float(os.getenv("LLM_TEMPERATURE", "0.1"))
    )
    max_tokens: int = field(
        default_factory=lambda: int(os.getenv("LLM_MAX_TOKENS", "500"))
    )
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("LLM_MAX_RETRIES", "3"))
    )


@dataclass(frozen=True)
class ProviderConfig:
    """
    Selects the classifier/drafter implementation at startup.

    ``provider`` is one of ``stub``, ``openai`` or ``auto``. ``auto`` uses
    the external model when an API key is configured and the stub otherwise.
    """

    provider: str = field(
        default_factory=lambda: os.getenv("TRIAGE_PROVIDER", "auto").lower()
    )
    # Amplitude of the random noise added to stub confidences (0 disables it)
    stub_confidence_jitter: float = field(
        default_factory=lambda: float(os.getenv("STUB_CONFIDENCE_JITTER", "0.0"))
    )
    stub_random_seed: Optional[int] = field(
        default_factory=lambda: _optional_int("STUB_RANDOM_SEED")
    )


@dataclass(frozen=True)
class PipelineConfig:
    """Timeouts and limits applied by the orchestrator and the queue."""

    classify_timeout: float = field(
        default_factory=lambda: float(os.getenv("CLASSIFY_TIMEOUT", "10"))
    )
    retrieve_timeout: float = field(
        default_factory=lambda: float(os.getenv("RETRIEVE_TIMEOUT", "5"))
    )
    draft_timeout: float = field(
        default_factory=lambda: float(os.getenv("DRAFT_TIMEOUT", "15"))
    )
    retrieval_limit: int = field(
        default_factory=lambda: int(os.getenv("RETRIEVAL_LIMIT", "5"))
    )
    draft_max_length: int = field(
        default_factory=lambda: int(os.getenv("DRAFT_MAX_LENGTH", "5000"))
    )
    snippet_length: int = field(
        default_factory=lambda: int(os.getenv("SNIPPET_LENGTH", "150"))
    )
    max_citations: int = field(
        default_factory=lambda: int(os.getenv("MAX_CITATIONS", "3"))
    )
    queue_workers: int = field(
        default_factory=lambda: int(os.getenv("QUEUE_WORKERS", "4"))
    )
    queue_max_attempts: int = field(
        default_factory=lambda: int(os.getenv("QUEUE_MAX_ATTEMPTS", "3"))
    )


@dataclass(frozen=True)
class DataConfig:
    """Where seed data (articles, tickets, policy) is loaded from."""

    # Local YAML path or http(s) URL
    seed_source: str = field(
        default_factory=lambda: os.getenv("SEED_SOURCE", "./data/seed.yaml")
    )

    # Request timeout in seconds
    request_timeout: int = field(
        default_factory=lambda: int(os.getenv("REQUEST_TIMEOUT", "30"))
    )


@dataclass(frozen=True)
class OutputConfig:
    """Configuration for output files."""

    output_dir: Path = field(
        default_factory=lambda: Path(os.getenv("OUTPUT_DIR", "./output"))
    )
    report_filename: str = field(
        default_factory=lambda: os.getenv(
            "REPORT_FILENAME",
            "triage_report.xlsx"
        )
    )

    @property
    def report_path(self) -> Path:
        """Get full path to the report file."""
        return self.output_dir / self.report_filename


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration aggregating all config sections."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    data: DataConfig = field(default_factory=DataConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    # Logging level
    log_level: str = field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO")
    )

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.

        Returns:
            List of validation error messages (empty if valid).
        """
        errors = []

        if self.provider.provider not in ("stub", "openai", "auto"):
            errors.append(
                f"TRIAGE_PROVIDER must be stub, openai or auto (got '{self.provider.provider}')"
            )
        if self.provider.provider == "openai" and not self.llm.api_key:
            errors.append("OPENAI_API_KEY is required when TRIAGE_PROVIDER=openai")
        if self.provider.stub_confidence_jitter < 0:
            errors.append("STUB_CONFIDENCE_JITTER must not be negative")

        timeouts = {
            "CLASSIFY_TIMEOUT": self.pipeline.classify_timeout,
            "RETRIEVE_TIMEOUT": self.pipeline.retrieve_timeout,
            "DRAFT_TIMEOUT": self.pipeline.draft_timeout,
        }
        for name, value in timeouts.items():
            if value <= 0:
                errors.append(f"{name} must be positive")

        if self.pipeline.retrieval_limit < 1:
            errors.append("RETRIEVAL_LIMIT must be at least 1")
        if self.pipeline.queue_workers < 1:
            errors.append("QUEUE_WORKERS must be at least 1")
        if self.pipeline.queue_max_attempts < 1:
            errors.append("QUEUE_MAX_ATTEMPTS must be at least 1")

        return errors


def get_config() -> AppConfig:
    """
    Get application configuration.

    Returns:
        AppConfig instance with all settings loaded from environment.
    """
    return AppConfig()
