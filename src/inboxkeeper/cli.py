"""Command-line interface for inboxkeeper."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from inboxkeeper import __version__
from inboxkeeper.config import Config, load_config
from inboxkeeper.exceptions import ProviderError
from inboxkeeper.gateway import IntelligenceGateway
from inboxkeeper.gmail_client import GmailClients
from inboxkeeper.heuristics import HeuristicClassifier
from inboxkeeper.llm_client import LLMClient
from inboxkeeper.models import Email
from inboxkeeper.normalizer import MessageNormalizer, parse_address, parse_sender_name
from inboxkeeper.storage import CacheStorage
from inboxkeeper.store import ReconciliationStore
from inboxkeeper.structured_logger import StructuredLogger
from inboxkeeper.sync import DeltaSyncScheduler, GmailDeltaFetcher, SyncEvent, SyncResult

console = Console(width=200, soft_wrap=False)
logger = logging.getLogger("inboxkeeper")

PRIORITY_STYLES = {
    "Urgent": "bold red",
    "High": "red",
    "Medium": "yellow",
    "Low": "dim",
    "Update": "blue",
}


def setup_logging(level: str, log_file: str | None = None) -> None:
    """Configure logging."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
    ]

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,
    )

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@dataclass
class Services:
    """Wired-up collaborators for one CLI invocation."""

    storage: CacheStorage
    store: ReconciliationStore
    audit: StructuredLogger
    llm: LLMClient
    gmail: GmailClients
    gateway: IntelligenceGateway
    scheduler: DeltaSyncScheduler

    async def close(self) -> None:
        await self.gmail.close()
        await self.llm.close()


def build_services(cfg: Config) -> Services:
    """Construct the object graph from configuration."""
    storage = CacheStorage(cfg.database_path)
    store = ReconciliationStore(storage)
    audit = StructuredLogger(cfg.logging.audit_file)
    llm = LLMClient(cfg.llm)
    gmail = GmailClients.from_config(cfg)
    gateway = IntelligenceGateway(llm, HeuristicClassifier(cfg.classifier), audit)
    fetcher = GmailDeltaFetcher(
        gmail, MessageNormalizer(), cfg.gmail.inbox_query, cfg.gmail.max_results
    )
    scheduler = DeltaSyncScheduler(
        store,
        fetcher,
        gateway=gateway,
        storage=storage,
        audit=audit,
        interval=cfg.sync.interval,
        enrich_new=cfg.sync.enrich_new,
    )
    return Services(storage, store, audit, llm, gmail, gateway, scheduler)


def _resolve_account(cfg: Config, account: str | None) -> str:
    if account:
        return account
    if not cfg.account_emails:
        raise click.UsageError("No account given and none configured under 'accounts'")
    return cfg.account_emails[0]


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Inbox Keeper - Reconcile and prioritize Gmail messages."""
    pass


config_option = click.option(
    "--config",
    "-c",
    required=True,
    type=click.Path(exists=True),
    help="Path to configuration YAML file",
)


@cli.command()
@config_option
@click.option("--account", "-a", default=None, help="Account email (default: first configured)")
@click.option("--full", is_flag=True, help="Refetch the whole inbox instead of a delta")
@click.option("--limit", "-l", type=int, default=25, help="Number of emails to show")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def sync(config: str, account: str | None, full: bool, limit: int, verbose: bool) -> None:
    """Sync one account and show the prioritized inbox."""
    try:
        cfg = load_config(config)
        setup_logging("DEBUG" if verbose else cfg.logging.level, cfg.logging.log_file)
        target = _resolve_account(cfg, account)

        console.print(f"[bold blue]Inbox Keeper v{__version__}[/bold blue]")
        console.print(f"Account: {target} ({'full' if full else 'delta'} sync)")

        services = build_services(cfg)
        result = asyncio.run(_sync(services, target, full))

        if result is None:
            console.print("[yellow]A sync for this account is already running[/yellow]")
            return

        _print_result(result)
        _print_emails(services.store.get_cached(target)[:limit], title=f"Inbox: {target}")

    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        sys.exit(1)
    except ProviderError as e:
        console.print(f"[red]Gmail error ({type(e).__name__}): {e}[/red]")
        sys.exit(1)


async def _sync(services: Services, account: str, full: bool) -> SyncResult | None:
    try:
        services.store.activate(account)
        if full:
            return await services.scheduler.refresh(account)
        return await services.scheduler.sync_once(account)
    finally:
        await services.close()


@cli.command()
@config_option
@click.option("--account", "-a", multiple=True, help="Account(s) to watch (default: all configured)")
def watch(config: str, account: tuple[str, ...]) -> None:
    """Run periodic delta syncs until interrupted."""
    try:
        cfg = load_config(config)
        setup_logging(cfg.logging.level, cfg.logging.log_file)

        accounts = list(account) or cfg.account_emails
        if not accounts:
            raise click.UsageError("No accounts given and none configured under 'accounts'")

        console.print(f"[bold blue]Inbox Keeper v{__version__} - Watch Mode[/bold blue]")
        console.print(f"Accounts: {', '.join(accounts)} (every {cfg.sync.interval:g}s)")

        services = build_services(cfg)
        services.audit.log_startup(
            {
                "accounts": accounts,
                "interval": cfg.sync.interval,
                "llm_enabled": services.llm.is_enabled,
                "models": cfg.llm.models,
            }
        )
        try:
            asyncio.run(_watch(services, accounts))
        except KeyboardInterrupt:
            console.print("\n[yellow]Shutdown requested, stopped watching[/yellow]")
            services.audit.log_shutdown("interrupted")

    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except ValidationError as e:
        console.print(f"[red]Invalid configuration: {escape(str(e))}[/red]")
        sys.exit(1)


async def _watch(services: Services, accounts: list[str]) -> None:
    def on_sync(event: SyncEvent) -> None:
        console.print(
            f"[green]{event.account}[/green]: {event.changed} change(s) "
            f"({event.kind}, {event.result.total} cached)"
        )

    services.scheduler.subscribe(on_sync)
    tasks = []
    for account in accounts:
        services.store.activate(account)
        tasks.append(services.scheduler.start(account))

    try:
        await asyncio.gather(*tasks)
    finally:
        await services.scheduler.stop_all()
        await services.close()


@cli.command()
@click.option("--subject", "-s", default="", help="Email subject")
@click.option("--body", "-b", default="", help="Email body text")
@click.option("--sender", default="", help='Sender, e.g. "Jane Doe <jane@example.com>"')
@click.option("--recipients", "-r", type=int, default=1, help="Number of recipients")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    default=None,
    help="Configuration file (for personal contacts)",
)
def classify(subject: str, body: str, sender: str, recipients: int, config: str | None) -> None:
    """Run the offline heuristic classifier on a message."""
    cfg = load_config(config) if config else Config()
    classifier = HeuristicClassifier(cfg.classifier)

    email = Email(
        subject=subject,
        sender=parse_sender_name(sender) if sender else "",
        sender_email=parse_address(sender) if sender else "",
        recipients=[f"recipient{i}@example.com" for i in range(recipients)],
        content=body,
    )
    report = classifier.analyze(email)

    table = Table(title="Heuristic Analysis")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    priority = report.priority.priority.value
    table.add_row("Priority", f"[{PRIORITY_STYLES[priority]}]{priority}[/]")
    table.add_row("Score", f"{report.priority.score:.2f}")
    table.add_row("Marketing", "yes" if report.priority.is_marketing else "no")
    table.add_row("Sentiment", report.sentiment.value)
    table.add_row("Categories", ", ".join(report.categories))
    table.add_row("Action", report.action.value if report.action else "-")
    console.print(table)

    for reason in report.priority.reasons:
        console.print(f"  - {reason}")


@cli.group()
def cache() -> None:
    """Inspect or clear cached collections."""
    pass


@cache.command("show")
@config_option
@click.option("--account", "-a", default=None, help="Show the emails of one account")
@click.option("--limit", "-l", type=int, default=25, help="Number of emails to show")
def cache_show(config: str, account: str | None, limit: int) -> None:
    """Show cached collections."""
    cfg = load_config(config)
    storage = CacheStorage(cfg.database_path)

    if account:
        store = ReconciliationStore(storage)
        if not store.activate(account):
            console.print(f"No cached emails for {account}")
            return
        _print_emails(store.get_cached(account)[:limit], title=f"Cache: {account}")
        return

    entries = storage.list_collections()
    if not entries:
        console.print("No cached collections")
        return

    table = Table(title="Cached Collections")
    table.add_column("Key", style="cyan")
    table.add_column("Emails", justify="right")
    table.add_column("Refreshed", style="dim")
    for entry in entries:
        table.add_row(entry["cache_key"], str(entry["email_count"]), entry["refreshed_at"][:19])
    console.print(table)


@cache.command("clear")
@config_option
@click.option("--account", "-a", default=None, help="Account to clear")
@click.option("--all", "clear_all", is_flag=True, help="Clear every account")
def cache_clear(config: str, account: str | None, clear_all: bool) -> None:
    """Clear cached collections and sync checkpoints."""
    if not account and not clear_all:
        raise click.UsageError("Give --account or --all")

    cfg = load_config(config)
    store = ReconciliationStore(CacheStorage(cfg.database_path))

    if clear_all:
        store.clear_all()
        console.print("[green]Cleared all cached collections[/green]")
    else:
        store.clear(account)
        console.print(f"[green]Cleared cache for {account}[/green]")


def _print_result(result: SyncResult) -> None:
    table = Table(title="Sync Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")

    table.add_row("Added", str(result.added))
    table.add_row("Updated", str(result.updated))
    table.add_row("Removed", str(result.removed))
    table.add_row("Cached", str(result.total))

    console.print(table)


def _print_emails(emails: list[Email], title: str) -> None:
    table = Table(title=title)
    table.add_column("Date", style="dim")
    table.add_column("Priority")
    table.add_column("From")
    table.add_column("Subject")
    table.add_column("Action")
    table.add_column("Sync", justify="center")

    for email in emails:
        date = email.timestamp.strftime("%Y-%m-%d %H:%M") if email.has_reliable_timestamp else "-"
        style = PRIORITY_STYLES[email.priority.value]
        subject = escape(email.subject[:60])
        if not email.is_read:
            subject = f"[bold]{subject}[/bold]"
        table.add_row(
            date,
            f"[{style}]{email.priority.value}[/]",
            escape((email.sender if email.sender != "Unknown" else email.sender_email)[:30]),
            subject,
            email.suggested_action.value if email.suggested_action else "-",
            email.sync_status.value,
        )

    console.print(table)


@cli.command()
@click.argument("output", type=click.Path())
def init_config(output: str) -> None:
    """Generate a sample configuration file."""
    sample_config = """# Inbox Keeper Configuration

# Each account needs its own OAuth access token (gmail.modify scope).
# A bare address uses the token from the gmail section; only one
# account may do so.
accounts:
  - me@example.com
  # - email: work@example.com
  #   access_token_env: GMAIL_WORK_ACCESS_TOKEN

gmail:
  access_token_env: GMAIL_ACCESS_TOKEN
  inbox_query: "in:inbox"
  max_results: 50
  timeout: 30

llm:
  enabled: true
  base_url: https://api.openai.com/v1
  api_key_env: OPENAI_API_KEY
  # Tried in order; a model that is not available moves on to the next
  models:
    - gpt-3.5-turbo
    - gpt-4
    - gpt-4-turbo-preview
  temperature: 0.1
  timeout: 30

classifier:
  # Name or address fragments of people whose mail matters
  personal_contacts: []
  extra_marketing_domains: []

sync:
  interval: 30
  enrich_new: true

logging:
  level: INFO
  # log_file: inboxkeeper.log
  audit_file: audit.jsonl

database_path: inboxkeeper.db
"""
    Path(output).write_text(sample_config)
    console.print(f"[green]Sample configuration written to {output}[/green]")
    console.print("\nNext steps:")
    console.print("1. List your account under 'accounts'")
    console.print("2. Set the GMAIL_ACCESS_TOKEN (and optionally OPENAI_API_KEY) environment variables")
    console.print("3. Run: inboxkeeper sync --config " + output)
    console.print("4. Run: inboxkeeper watch --config " + output)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
