"""Command-line interface for replydesk.

Provides commands for configuration validation, template corpus inspection
and conversion, offline template matching, single-email replies and IMAP
batch processing.

Usage:
    python -m replydesk validate-config
    python -m replydesk templates templates.json
    python -m replydesk convert-templates templates.csv templates.json
    python -m replydesk match --subject "Refund" --body "Please refund my order" --category 退款相关
    python -m replydesk reply message.eml
    python -m replydesk process --once
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from replydesk.config import validate_config_file
from replydesk.core.logging import configure_logging

if TYPE_CHECKING:
    from replydesk.config_schema import AppConfig
    from replydesk.engine.processor import BatchResult
    from replydesk.mail.preprocess import EmailPreprocessor
    from replydesk.oracle.base import Oracle
    from replydesk.responder.analyzer import IntentAnalyzer
    from replydesk.responder.composer import ResponseComposer
    from replydesk.templates.retriever import TemplateRetriever
    from replydesk.templates.store import TemplateStore

console = Console()

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)


@dataclass(frozen=True, slots=True)
class CLIDeps:
    """Shared services initialized by _init_cli_deps()."""

    config: AppConfig
    oracle: Oracle
    store: TemplateStore | None
    retriever: TemplateRetriever | None
    analyzer: IntentAnalyzer
    composer: ResponseComposer
    preprocessor: EmailPreprocessor


def _load_config_or_exit(config_path: Path | None) -> AppConfig:
    from replydesk.config import load_config
    from replydesk.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return load_config(config_path)
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Copy config/config.yaml.example to config/config.yaml and edit it."
        )
        sys.exit(1)


def _load_store_or_exit(path: Path) -> TemplateStore:
    from replydesk.core.errors import CorpusLoadError
    from replydesk.templates.store import TemplateStore

    try:
        return TemplateStore.load(path)
    except CorpusLoadError as e:
        console.print(
            f"[red]Template corpus error:[/red] {e}\n\n"
            "Generate a corpus with: replydesk convert-templates <csv> <json>"
        )
        sys.exit(1)


def _init_cli_deps(config_path: Path | None) -> CLIDeps:
    """Initialize shared CLI services.

    Loads config, builds the oracle, template store, analyzer and composer,
    and returns them in a frozen dataclass. Prints actionable error
    messages and calls sys.exit(1) on failure.
    """
    from replydesk.config import resolve_secret
    from replydesk.core.errors import ConfigValidationError
    from replydesk.mail.preprocess import EmailPreprocessor
    from replydesk.oracle.client import build_oracle
    from replydesk.responder.analyzer import IntentAnalyzer
    from replydesk.responder.composer import ResponseComposer
    from replydesk.templates.retriever import TemplateRetriever

    # 1. Load config
    config = _load_config_or_exit(config_path)

    # 2. Build oracle
    try:
        oracle = build_oracle(config.oracle, resolve_secret(config.oracle.api_key_env))
    except ConfigValidationError as e:
        console.print(f"[red]Oracle error:[/red] {e}")
        sys.exit(1)

    # 3. Load template corpus (fatal when enabled and unreadable)
    store = None
    retriever = None
    if config.templates.enabled:
        store = _load_store_or_exit(Path(config.templates.path))
        retriever = TemplateRetriever(store)

    # 4. Responder services
    analyzer = IntentAnalyzer(oracle, config=config, store=store)
    composer = ResponseComposer(oracle, config=config, retriever=retriever, analyzer=analyzer)

    return CLIDeps(
        config=config,
        oracle=oracle,
        store=store,
        retriever=retriever,
        analyzer=analyzer,
        composer=composer,
        preprocessor=EmailPreprocessor(),
    )


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """replydesk - AI-assisted customer support replies."""
    log_level = "DEBUG" if debug else "INFO"
    # Human-readable output for interactive commands; `process` switches to JSON
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@config_option
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes schema validation.
    Reports specific errors for invalid fields.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("templates")
@click.argument("path", type=click.Path(path_type=Path), default=Path("templates.json"))
def templates(path: Path) -> None:
    """Load a template corpus and show per-category counts."""
    store = _load_store_or_exit(path)

    table = Table(box=None, padding=(0, 2))
    table.add_column("Category", style="cyan")
    table.add_column("Templates", justify="right")
    for category, items in store.iter_categories():
        table.add_row(category, str(len(items)))

    console.print(f"\n[bold]Template corpus[/bold] [dim]{path}[/dim]\n")
    console.print(table)
    console.print(
        f"\n  {len(store)} templates in {len(store.get_categories())} categories"
        f" (corpus version {store.version})"
    )


@cli.command("convert-templates")
@click.argument("csv_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output_path", type=click.Path(dir_okay=False, path_type=Path))
def convert_templates(csv_path: Path, output_path: Path) -> None:
    """Convert a template spreadsheet export (CSV) into a JSON corpus."""
    from replydesk.core.errors import CorpusLoadError
    from replydesk.templates.convert import convert_csv_to_corpus, write_corpus

    try:
        corpus, stats = convert_csv_to_corpus(csv_path)
        write_corpus(corpus, output_path)
    except (CorpusLoadError, OSError) as e:
        console.print(f"[red]Conversion failed:[/red] {e}")
        sys.exit(1)

    table = Table(box=None, padding=(0, 2))
    table.add_column("Category", style="cyan")
    table.add_column("Templates", justify="right")
    for category, count in stats.per_category.items():
        table.add_row(category, str(count))

    console.print(table)
    console.print(
        f"\n[green]✓[/green] Wrote {stats.converted} templates to [cyan]{output_path}[/cyan]"
        f" ({stats.skipped} of {stats.rows} rows skipped)"
    )


@cli.command("match")
@click.option("--subject", default="", help="Email subject")
@click.option("--body", required=True, help="Email body text")
@click.option("--category", default="", help="Category to match (empty searches all)")
@click.option(
    "--limit",
    default=None,
    type=int,
    help="Maximum candidates (default: composer.display_limit)",
)
@click.option(
    "--templates",
    "templates_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Template corpus path (default: templates.path)",
)
@config_option
def match(
    subject: str,
    body: str,
    category: str,
    limit: int | None,
    templates_path: Path | None,
    config_path: Path | None,
) -> None:
    """Rank templates for an email offline (no oracle calls).

    Uses config.yaml for defaults when it exists; no API key is needed.
    """
    from replydesk.config import get_config_path
    from replydesk.config_schema import AppConfig
    from replydesk.mail.models import ProcessedEmail
    from replydesk.templates.retriever import TemplateRetriever

    if config_path or get_config_path().exists():
        config = _load_config_or_exit(config_path)
    else:
        config = AppConfig()

    store = _load_store_or_exit(templates_path or Path(config.templates.path))
    retriever = TemplateRetriever(store)
    email = ProcessedEmail(uid=0, sender="", subject=subject, text=body)

    matches = retriever.find_best_matches(
        email, category or None, limit=limit if limit is not None else config.composer.display_limit
    )
    language = retriever.detect_language(email)

    if not matches:
        console.print(f"No templates matched. Detected language: [cyan]{language}[/cyan]")
        return

    table = Table(padding=(0, 1))
    table.add_column("#", justify="right")
    table.add_column("Template", style="cyan")
    table.add_column("Category")
    table.add_column("Scenario")
    table.add_column("Score", justify="right")
    table.add_column("Matched keywords", style="dim")
    for rank, item in enumerate(matches, start=1):
        table.add_row(
            str(rank),
            item.template.id,
            item.template.category,
            item.template.scenario,
            f"{item.score:g}",
            ", ".join(item.matched_keywords),
        )

    console.print(table)
    console.print(f"Detected language: [cyan]{language}[/cyan]")


@cli.command("reply")
@click.argument("eml_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--no-templates", is_flag=True, help="Skip templates and draft free-form")
@config_option
def reply(eml_file: Path, no_templates: bool, config_path: Path | None) -> None:
    """Analyze one .eml file and print the composed reply."""
    from replydesk.core.errors import OracleError
    from replydesk.mail.parser import parse_message

    deps = _init_cli_deps(config_path)
    email = deps.preprocessor.process(parse_message(eml_file.read_bytes()))

    try:
        analysis = deps.analyzer.analyze(email)
        result = deps.composer.compose(email, analysis, use_templates=not no_templates)
    except OracleError as e:
        console.print(
            f"\n[red]Oracle error:[/red] {e}\n\n"
            f"Check {deps.config.oracle.api_key_env} and oracle.base_url in config.yaml."
        )
        sys.exit(1)

    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column("Field", style="cyan")
    summary.add_column("Value")
    summary.add_row("Category", analysis.category)
    summary.add_row("Intent", analysis.intent.value)
    summary.add_row("Priority", analysis.priority.value)
    summary.add_row("Important", "yes" if analysis.is_important else "no")
    summary.add_row("Language", result.language)
    summary.add_row("Outcome", result.outcome.value)
    if result.matched_templates:
        chosen = result.matched_templates[0]
        summary.add_row("Template", f"{chosen.id} ({chosen.scenario}, score {chosen.score:g})")
    if result.selection_reasoning:
        summary.add_row("Selection", result.selection_reasoning)

    console.print(summary)
    style = "yellow" if result.needs_manual_review else "green"
    console.print(Panel(result.response, title="Reply", border_style=style))


@cli.command("process")
@click.option("--once", is_flag=True, help="Run a single batch and exit")
@click.option(
    "--save-drafts/--no-save-drafts",
    default=None,
    help="Override processing.save_drafts",
)
@click.option(
    "--mark-read/--no-mark-read",
    default=None,
    help="Override processing.mark_as_read",
)
@click.option("--no-templates", is_flag=True, help="Skip templates and draft free-form")
@config_option
def process(
    once: bool,
    save_drafts: bool | None,
    mark_read: bool | None,
    no_templates: bool,
    config_path: Path | None,
) -> None:
    """Process unread mail from the IMAP mailbox.

    Without --once, runs a batch every processing.fetch_interval_minutes.
    """
    try:
        if once:
            asyncio.run(_run_process_once(config_path, save_drafts, mark_read, no_templates))
        else:
            asyncio.run(_run_process_continuous(config_path, save_drafts, mark_read, no_templates))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped.[/yellow]")
        sys.exit(130 if once else 0)
    except SystemExit:
        raise
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _build_processor(
    config_path: Path | None,
    save_drafts: bool | None,
    mark_read: bool | None,
    no_templates: bool,
):
    """Build a BatchProcessor with CLI overrides applied."""
    from replydesk.config import resolve_secret
    from replydesk.engine.processor import BatchProcessor
    from replydesk.mail.imap import Mailbox

    deps = _init_cli_deps(config_path)
    config = deps.config

    overrides = {}
    if save_drafts is not None:
        overrides["save_drafts"] = save_drafts
    if mark_read is not None:
        overrides["mark_as_read"] = mark_read
    if overrides:
        config = config.model_copy(
            update={"processing": config.processing.model_copy(update=overrides)}
        )

    password = resolve_secret(config.imap.password_env)
    if not password:
        console.print(
            f"[red]IMAP error:[/red] Set the {config.imap.password_env} environment "
            "variable (or add it to .env)."
        )
        sys.exit(1)

    configure_logging(log_level=config.logging.level, json_output=True)

    processor = BatchProcessor(
        config=config,
        analyzer=deps.analyzer,
        composer=deps.composer,
        preprocessor=deps.preprocessor,
        mailbox_factory=lambda: Mailbox(config.imap, password),
        use_templates=not no_templates,
    )
    return processor, config


def _print_batch(result: BatchResult) -> None:
    console.print(f"\n[bold]Batch Summary[/bold] (batch {result.batch_id[:8]}...)")
    console.print(f"  Duration:      {result.duration_ms}ms")
    console.print(f"  Fetched:       {result.fetched}")
    console.print(f"  Processed:     {result.processed}")
    console.print(f"  Personalized:  {result.personalized}")
    console.print(f"  Manual review: {result.manual_review}")
    console.print(f"  Free-form:     {result.free_form}")
    console.print(f"  Skipped:       {result.skipped}")
    console.print(f"  Failed:        {result.failed}")
    console.print(f"  Drafts saved:  {result.drafts_saved}")
    console.print(f"  Marked read:   {result.marked_read}")


async def _run_process_once(
    config_path: Path | None,
    save_drafts: bool | None,
    mark_read: bool | None,
    no_templates: bool,
) -> None:
    processor, _ = _build_processor(config_path, save_drafts, mark_read, no_templates)
    result = await processor.run_once()
    _print_batch(result)


async def _run_process_continuous(
    config_path: Path | None,
    save_drafts: bool | None,
    mark_read: bool | None,
    no_templates: bool,
) -> None:
    """Run batches on an APScheduler interval until interrupted."""
    import signal
    from datetime import datetime

    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    processor, config = _build_processor(config_path, save_drafts, mark_read, no_templates)
    interval = config.processing.fetch_interval_minutes

    async def run_batch():
        result = await processor.run_once()
        console.print(
            f"[dim]Batch {result.batch_id[:8]}...[/dim] "
            f"fetched={result.fetched} processed={result.processed} "
            f"failed={result.failed} ({result.duration_ms}ms)"
        )

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        run_batch,
        "interval",
        minutes=interval,
        id="process_batch",
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(),
    )
    scheduler.start()

    console.print(f"Processing mail every {interval} minutes. Press Ctrl+C to stop.")

    # Wait until interrupted
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, stop_event.set)
    loop.add_signal_handler(signal.SIGTERM, stop_event.set)
    await stop_event.wait()

    scheduler.shutdown(wait=False)


def main() -> None:
    """Entry point for the CLI (loads .env for the console script)."""
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
