"""
Main entry point for the ticket triage pipeline.

Runs the pipeline over a seeded in-memory helpdesk:
1. Load seed data (articles, tickets, triage policy)
2. Build the classifier and drafter for the configured provider
3. Triage tickets (selected ids, or every open ticket through the queue)
4. Summarize suggestion statistics
5. Optionally write the Excel report
"""

import asyncio
import logging
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

import click

from .audit import AuditRecorder
from .config import get_config, AppConfig, OutputConfig
from .data_sources import load_seed_data, populate_stores, DataSourceError
from .decision import DecisionPolicy
from .excel_generator import generate_report, ReportGeneratorError
from .knowledge_base import KnowledgeRetriever
from .models import TriageResult
from .orchestrator import TriageError, TriageOrchestrator
from .providers import build_providers, ProviderError
from .stats import SuggestionStats, TIMEFRAME_DAYS, compute_stats
from .stores import (
    InMemoryArticleStore,
    InMemoryAuditSink,
    InMemoryConfigStore,
    InMemorySuggestionStore,
    InMemoryTicketStore,
    TicketNotFound,
)
from .task_queue import TriageQueue
from .tickets import TicketDesk


def setup_logging(level: str) -> None:
    """
    Configure application logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Error during pipeline execution."""
    pass


@dataclass
class Components:
    """Everything the pipeline wires together for one run."""

    tickets: InMemoryTicketStore
    articles: InMemoryArticleStore
    suggestions: InMemorySuggestionStore
    configs: InMemoryConfigStore
    audit: AuditRecorder
    orchestrator: TriageOrchestrator
    queue: TriageQueue
    desk: TicketDesk


@dataclass
class PipelineSummary:
    """Outcome of a pipeline run."""

    results: dict[str, TriageResult] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    stats: Optional[SuggestionStats] = None
    report_path: Optional[Path] = None


def validate_config(config: AppConfig) -> None:
    """
    Validate configuration before running.

    Raises:
        PipelineError: If configuration is invalid.
    """
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        raise PipelineError(
            f"Configuration validation failed with {len(errors)} error(s)"
        )


def build_components(config: AppConfig) -> Components:
    """
    Build stores, providers and the triage services.

    Raises:
        PipelineError: If the provider cannot be built.
    """
    try:
        classifier, drafter = build_providers(config)
    except ProviderError as e:
        raise PipelineError(f"Provider setup failed: {e}") from e

    tickets = InMemoryTicketStore()
    articles = InMemoryArticleStore()
    suggestions = InMemorySuggestionStore()
    configs = InMemoryConfigStore()
    audit = AuditRecorder(InMemoryAuditSink())

    orchestrator = TriageOrchestrator(
        tickets=tickets,
        suggestions=suggestions,
        configs=configs,
        classifier=classifier,
        retriever=KnowledgeRetriever(articles, default_limit=config.pipeline.retrieval_limit),
        drafter=drafter,
        audit=audit,
        policy=DecisionPolicy(),
        settings=config.pipeline,
    )
    queue = TriageQueue(
        orchestrator,
        workers=config.pipeline.queue_workers,
        max_attempts=config.pipeline.queue_max_attempts,
    )
    desk = TicketDesk(tickets, suggestions, audit, queue=queue)

    return Components(
        tickets=tickets,
        articles=articles,
        suggestions=suggestions,
        configs=configs,
        audit=audit,
        orchestrator=orchestrator,
        queue=queue,
        desk=desk,
    )


async def triage_open_tickets(components: Components) -> None:
    """Run every open ticket through the background queue and wait for it."""
    queue = components.queue
    queue.requeue_untriaged(components.tickets)
    await queue.start()
    try:
        await queue.join()
    finally:
        await queue.stop()
        await components.audit.flush()


def triage_selected(components: Components, ticket_ids: list[str], summary: PipelineSummary) -> None:
    """Manually (re-)triage the given tickets one by one."""
    for ticket_id in ticket_ids:
        try:
            summary.results[ticket_id] = components.orchestrator.triage_sync(ticket_id)
        except (TicketNotFound, TriageError) as e:
            logger.error(f"Could not triage ticket {ticket_id}: {e}")
            summary.failures[ticket_id] = str(e)


def run_pipeline(
    config: Optional[AppConfig] = None,
    ticket_ids: Optional[list[str]] = None,
    write_report: bool = False,
    timeframe: str = "7d",
) -> PipelineSummary:
    """
    Execute the triage pipeline.

    Args:
        config: Optional configuration override.
        ticket_ids: Tickets to triage; every open ticket when omitted.
        write_report: If True, write the Excel report.
        timeframe: Window for the statistics summary.

    Returns:
        PipelineSummary with per-ticket results and failures.

    Raises:
        PipelineError: If a pipeline step fails as a whole.
    """
    if config is None:
        config = get_config()

    setup_logging(config.log_level)
    logger.info("=" * 60)
    logger.info("Starting Ticket Triage Pipeline")
    logger.info("=" * 60)

    validate_config(config)

    # Step 1: Load seed data
    logger.info("-" * 40)
    logger.info("Step 1: Loading seed data")
    logger.info("-" * 40)

    try:
        seed = load_seed_data(config.data)
    except DataSourceError as e:
        raise PipelineError(f"Seed data load failed: {e}") from e

    # Step 2: Build providers and stores
    logger.info("-" * 40)
    logger.info("Step 2: Building triage services")
    logger.info("-" * 40)

    components = build_components(config)
    populate_stores(seed, components.tickets, components.articles, components.configs)

    # Step 3: Triage
    logger.info("-" * 40)
    logger.info("Step 3: Triaging tickets")
    logger.info("-" * 40)

    summary = PipelineSummary()
    if ticket_ids:
        triage_selected(components, ticket_ids, summary)
    else:
        asyncio.run(triage_open_tickets(components))
        summary.results.update(components.queue.results)
        summary.failures.update({k: str(v) for k, v in components.queue.failures.items()})

    logger.info(f"Triaged {len(summary.results)} tickets, {len(summary.failures)} failed")

    # Step 4: Statistics
    logger.info("-" * 40)
    logger.info("Step 4: Summarizing suggestions")
    logger.info("-" * 40)

    summary.stats = compute_stats(components.suggestions.list_all(), timeframe)
    logger.info(
        f"{summary.stats.total_suggestions} suggestions, "
        f"auto-close rate {summary.stats.auto_close_rate}%, "
        f"average confidence {summary.stats.average_confidence}"
    )

    # Step 5: Report (optional)
    if write_report:
        logger.info("-" * 40)
        logger.info("Step 5: Generating Excel report")
        logger.info("-" * 40)

        suggestions = components.suggestions.list_all()
        tickets = {}
        for suggestion in suggestions:
            ticket = components.tickets.get(suggestion.ticket_id)
            if ticket is not None:
                tickets[ticket.id] = ticket

        try:
            summary.report_path = generate_report(
                suggestions,
                tickets,
                components.audit.sink.list_all(),
                config.output,
            )
        except ReportGeneratorError as e:
            raise PipelineError(f"Report generation failed: {e}") from e

    logger.info("=" * 60)
    logger.info("Pipeline completed")
    if summary.report_path:
        logger.info(f"Report saved to: {summary.report_path}")
    logger.info("=" * 60)

    return summary


def print_summary(summary: PipelineSummary) -> None:
    for ticket_id, result in summary.results.items():
        outcome = "auto-closed" if result.decision.auto_closed else "waiting for human"
        click.echo(
            f"{ticket_id}: {result.classification.predicted_category.value} "
            f"({result.classification.confidence:.2f}) -> {outcome}"
        )
    for ticket_id, error in summary.failures.items():
        click.echo(f"{ticket_id}: FAILED - {error}", err=True)


@click.command()
@click.option(
    "--ticket",
    "-t",
    "ticket_ids",
    multiple=True,
    help="Ticket id to (re-)triage; may be repeated. Defaults to every open ticket",
)
@click.option(
    "--report",
    is_flag=True,
    default=False,
    help="Write the Excel triage report",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Custom output path for the report",
)
@click.option(
    "--timeframe",
    type=click.Choice(sorted(TIMEFRAME_DAYS)),
    default="7d",
    show_default=True,
    help="Window for the suggestion statistics",
)
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug logging",
)
@click.option(
    "--validate-only",
    is_flag=True,
    default=False,
    help="Only validate configuration without running the pipeline",
)
def main(
    ticket_ids: tuple[str, ...],
    report: bool,
    output: Optional[Path],
    timeframe: str,
    debug: bool,
    validate_only: bool,
) -> None:
    """
    Ticket triage pipeline.

    Classifies support tickets, retrieves knowledge-base articles, drafts a
    reply and either auto-closes the ticket or hands it to a human.
    """
    try:
        config = get_config()

        if debug:
            config = replace(config, log_level="DEBUG")
        if output:
            config = replace(
                config,
                output=OutputConfig(output_dir=output.parent, report_filename=output.name),
            )

        if validate_only:
            setup_logging(config.log_level)
            logger.info("Validating configuration...")
            validate_config(config)
            logger.info("Configuration is valid!")
            return

        summary = run_pipeline(
            config,
            ticket_ids=list(ticket_ids) or None,
            write_report=report or output is not None,
            timeframe=timeframe,
        )
        print_summary(summary)

        if summary.failures:
            sys.exit(1)

    except PipelineError as e:
        click.echo(f"Pipeline failed: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        if debug:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
