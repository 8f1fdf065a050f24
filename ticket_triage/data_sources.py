"""
Seed data for the ticket triage pipeline.

Loads knowledge-base articles, tickets and the triage policy from a YAML
document, either a local file or a document served over HTTP.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import httpx
import yaml
from pydantic import ValidationError

from .config import DataConfig
from .models import Article, Ticket, TriageConfig
from .stores import ArticleStore, ConfigStore, TicketStore


logger = logging.getLogger(__name__)


class DataSourceError(Exception):
    """Base exception for data source errors."""
    pass


class SeedDataError(DataSourceError):
    """Error when retrieving or parsing the seed document."""
    pass


@dataclass
class SeedData:
    """Parsed seed document."""

    articles: list[Article] = field(default_factory=list)
    tickets: list[Ticket] = field(default_factory=list)
    config: Optional[TriageConfig] = None


def _is_url(source: str) -> bool:
    return source.startswith(("http://", "https://"))


class SeedDataClient:
    """
    Reads the seed document from ``DataConfig.seed_source``.

    Remote sources are fetched with an httpx client, so the client must be
    used as a context manager.
    """

    def __init__(self, config: DataConfig):
        self._config = config
        self._client: Optional[httpx.Client] = None

    def __enter__(self) -> "SeedDataClient":
        """Context manager entry."""
        self._client = httpx.Client(timeout=self._config.request_timeout)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        if self._client:
            self._client.close()
            self._client = None

    def fetch(self) -> SeedData:
        """
        Fetch and parse the seed document.

        Returns:
            SeedData with every well-formed entry.

        Raises:
            SeedDataError: If the document cannot be read or is not YAML.
        """
        source = self._config.seed_source
        if not source:
            raise SeedDataError("No seed source configured (set SEED_SOURCE)")

        logger.info(f"Loading seed data from {source}")

        try:
            content = self._read_remote(source) if _is_url(source) else self._read_local(source)
            seed = self._parse(content)
        except SeedDataError:
            raise
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error fetching seed data: {e}")
            raise SeedDataError(f"HTTP error: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Request error fetching seed data: {e}")
            raise SeedDataError(f"Request failed: {str(e)}") from e
        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error: {e}")
            raise SeedDataError(f"Invalid YAML: {str(e)}") from e
        except OSError as e:
            logger.error(f"Could not read seed file: {e}")
            raise SeedDataError(f"Could not read {source}: {e}") from e

        logger.info(
            f"Loaded seed data: {len(seed.articles)} articles, {len(seed.tickets)} tickets"
        )
        return seed

    def _read_remote(self, url: str) -> str:
        if not self._client:
            raise RuntimeError("Client must be used within a context manager")

        response = self._client.get(url)
        response.raise_for_status()
        return response.text

    def _read_local(self, path: str) -> str:
        return Path(path).read_text(encoding="utf-8")

    def _parse(self, content: str) -> SeedData:
        """
        Parse YAML content into SeedData.

        Malformed articles and tickets are skipped with a warning; a
        malformed policy falls back to the defaults.
        """
        data = yaml.safe_load(content)

        if not data:
            logger.warning("Empty seed document received")
            return SeedData()
        if not isinstance(data, dict):
            raise SeedDataError("Seed document must be a mapping")

        return SeedData(
            articles=self._parse_entries(data.get("articles"), Article, "article"),
            tickets=self._parse_entries(data.get("tickets"), Ticket, "ticket"),
            config=self._parse_config(data.get("config")),
        )

    def _parse_entries(self, raw: Any, model, label: str) -> list:
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning(f"Expected a list of {label}s, got {type(raw).__name__}")
            return []

        entries = []
        for idx, item in enumerate(raw):
            if not isinstance(item, dict):
                logger.warning(f"Skipping {label} at index {idx}: not a mapping")
                continue
            try:
                entries.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning(
                    f"Skipping malformed {label} at index {idx}: {e.error_count()} validation errors"
                )
        return entries

    def _parse_config(self, raw: Any) -> Optional[TriageConfig]:
        if raw is None:
            return None
        try:
            return TriageConfig.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed triage config, defaults apply: {e}")
            return None


def populate_stores(
    seed: SeedData,
    tickets: TicketStore,
    articles: ArticleStore,
    configs: ConfigStore,
) -> None:
    """Write seed data into the stores."""
    for article in seed.articles:
        articles.add(article)
    for ticket in seed.tickets:
        tickets.create(ticket)
    if seed.config is not None:
        configs.update(seed.config.model_dump())
    else:
        configs.get_or_default()

    logger.debug(
        f"Populated stores with {len(seed.articles)} articles and {len(seed.tickets)} tickets"
    )


def load_seed_data(config: DataConfig) -> SeedData:
    """
    Convenience function to fetch the configured seed document.

    Raises:
        SeedDataError: If the document cannot be loaded.
    """
    with SeedDataClient(config) as client:
        return client.fetch()
