#!/usr/bin/env python3
"""
Card store command line.

Usage:
    cardstore import cards.json
    cardstore migrate --batch-size 50
    cardstore validate
    cardstore stats
    cardstore passphrase set
    cardstore --unlock passphrase set
    cardstore --unlock import cards.json
"""

import asyncio
import json
from pathlib import Path

import click
from loguru import logger
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from cardstore.config import settings
from cardstore.errors import CardStoreError
from cardstore.fingerprint import display_name
from cardstore.service import CardVault
from cardstore.store.sql import SqlRecordStore
from cardstore.types import DuplicateClassification, MigrationProgress

console = Console()


def _open_vault(ctx: click.Context) -> CardVault:
    return CardVault(SqlRecordStore(url=ctx.obj["db"]))


def _run(coro):
    """Run a command coroutine, reporting store errors instead of a traceback."""
    try:
        return asyncio.run(coro)
    except CardStoreError as e:
        logger.debug(f"Command failed: {e!r}")
        console.print(f"[red]Error: {e.message}[/red]")
        raise SystemExit(1)


def _prompt_phrases(confirm: bool = False) -> list[str]:
    count = settings.keys.phrase_count
    return [
        click.prompt(f"Phrase {i}", hide_input=True, confirmation_prompt=confirm)
        for i in range(1, count + 1)
    ]


async def _unlock(ctx: click.Context, vault: CardVault) -> bool:
    """Verify a passphrase first when --unlock was given."""
    if not ctx.obj["unlock"]:
        return True
    result = await vault.verify_passphrase(_prompt_phrases())
    if not result.success:
        console.print(f"[red]Unlock failed: {result.message}[/red]")
        return False
    return True


@click.group()
@click.option("--db", "db_url", default=None, help="Database URL (default: CARDSTORE_DB_URL)")
@click.option("--unlock", is_flag=True, help="Prompt for the passphrase to read encrypted cards")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, db_url, unlock, debug):
    """Encrypted, deduplicating business card store"""
    if debug:
        from cardstore.utils.logging import setup_logging
        setup_logging(level="DEBUG")
    ctx.ensure_object(dict)
    ctx.obj["db"] = db_url or settings.database.url
    ctx.obj["unlock"] = unlock


# =============================================================================
# Import
# =============================================================================

def _load_cards(path: Path) -> list[dict]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("cards", [])
    if not isinstance(data, list):
        raise click.BadParameter("expected a list of cards or {\"cards\": [...]}", param_hint="FILE")
    return data


@cli.command(name="import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--action", type=click.Choice(["replace", "merge", "skip"]), default=None,
              help="Action for duplicates (default: configured policy)")
@click.pass_context
def import_cards(ctx, file: Path, action: str | None):
    """Import cards from a JSON file, resolving duplicates."""
    cards = _load_cards(file)
    console.print(f"\n[bold blue]Importing {len(cards)} cards from {file.name}[/bold blue]\n")

    async def run():
        async with _open_vault(ctx) as vault:
            if not await _unlock(ctx, vault):
                return None
            return [await vault.import_card(card, action=action) for card in cards]

    outcomes = _run(run())
    if outcomes is None:
        raise SystemExit(1)

    table = Table()
    table.add_column("Card")
    table.add_column("Match")
    table.add_column("Similarity")
    table.add_column("Result")
    for card, outcome in zip(cards, outcomes):
        resolution = outcome.resolution
        match = resolution.classification.value if resolution else "-"
        similarity = f"{resolution.similarity:.2f}" if resolution else "-"
        if outcome.success:
            result = "[green]new[/green]" if match == DuplicateClassification.NONE.value else f"[green]{resolution.action.value}[/green]"
        else:
            result = f"[red]{outcome.reason.value if outcome.reason else 'failed'}: {outcome.message}[/red]"
        table.add_row(display_name(card), match, similarity, result)
    console.print(table)

    failed = sum(1 for o in outcomes if not o.success)
    if failed:
        console.print(f"\n[yellow]{failed} cards failed to import[/yellow]")


# =============================================================================
# Migration
# =============================================================================

@cli.command()
@click.option("--batch-size", type=int, default=None, help="Cards per batch")
@click.option("--max-retries", type=int, default=None, help="Retries per card")
@click.pass_context
def migrate(ctx, batch_size: int | None, max_retries: int | None):
    """Fingerprint every card that does not have a fingerprint yet."""
    console.print("\n[bold blue]Card Fingerprint Migration[/bold blue]\n")

    async def run():
        async with _open_vault(ctx) as vault:
            if not await _unlock(ctx, vault):
                return None

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                console=console,
            ) as progress:
                task = progress.add_task("Migrating...", total=100)

                def on_progress(update: MigrationProgress):
                    progress.update(
                        task,
                        completed=update.percentage,
                        description=f"Batch {update.batch} ({update.processed_count}/{update.total_count})",
                    )

                return await vault.migrate(batch_size=batch_size, max_retries=max_retries, on_progress=on_progress)

    result = _run(run())
    if result is None:
        raise SystemExit(1)

    table = Table()
    table.add_column("Total")
    table.add_column("Processed")
    table.add_column("Failed")
    table.add_column("Duration")
    table.add_row(
        str(result.total_count),
        str(result.processed_count),
        str(result.error_count),
        f"{result.duration_seconds:.1f}s" if result.duration_seconds is not None else "-",
    )
    console.print(table)

    for error in result.errors:
        console.print(f"[red]Batch {error.batch}: {error.message}[/red]")

    if result.success:
        console.print("[green]✓ Migration complete[/green]")
    else:
        console.print("[red]✗ Migration finished with errors[/red]")
        raise SystemExit(1)


@cli.command()
@click.pass_context
def validate(ctx):
    """Report fingerprint coverage."""

    async def run():
        async with _open_vault(ctx) as vault:
            return await vault.validate_migration()

    report = _run(run())

    table = Table(title="Fingerprint Coverage")
    table.add_column("Metric")
    table.add_column("Count", justify="right")
    table.add_row("Total cards", str(report.total_cards))
    table.add_row("With fingerprint", str(report.with_fingerprints))
    table.add_row("Without fingerprint", str(report.without_fingerprints))
    table.add_row("Malformed fingerprint", str(report.invalid_fingerprints))
    console.print(table)

    for issue in report.issues:
        console.print(f"[yellow]{issue}[/yellow]")
    if report.is_valid:
        console.print("[green]✓ All cards fingerprinted[/green]")


@cli.command()
@click.pass_context
def stats(ctx):
    """Show duplicate statistics."""

    async def run():
        async with _open_vault(ctx) as vault:
            if not await _unlock(ctx, vault):
                return None
            return await vault.duplicate_stats()

    result = _run(run())
    if result is None:
        raise SystemExit(1)

    table = Table(title="Duplicates")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total cards", str(result.total_cards))
    table.add_row("Unique fingerprints", str(result.unique_fingerprints))
    table.add_row("Duplicate groups", str(result.duplicate_groups))
    table.add_row("Duplicates", str(result.total_duplicates))
    table.add_row("Duplicate rate", f"{result.duplicate_rate}%")
    console.print(table)


@cli.command()
@click.option("--count", type=int, default=None, help="Card count (default: cards in the store)")
@click.pass_context
def estimate(ctx, count: int | None):
    """Estimate migration time."""

    async def run():
        async with _open_vault(ctx) as vault:
            return await vault.estimate_processing_time(count)

    result = _run(run())
    console.print(
        f"{result.card_count} cards in {result.batch_count} batches: "
        f"~{result.estimated_seconds}s ({result.estimated_minutes} min)"
    )


@cli.command()
@click.pass_context
def cleanup(ctx):
    """Reset cards left pending by an interrupted migration."""

    async def run():
        async with _open_vault(ctx) as vault:
            return await vault.cleanup_migration_data()

    cleaned = _run(run())
    console.print(f"[green]Reset {cleaned} pending cards[/green]")


# =============================================================================
# Passphrase
# =============================================================================

@cli.group()
def passphrase():
    """Manage the encryption passphrase."""
    pass


@passphrase.command(name="set")
@click.pass_context
def set_passphrase(ctx):
    """Set a new passphrase. Changing an existing one needs --unlock."""

    async def run():
        async with _open_vault(ctx) as vault:
            if not await _unlock(ctx, vault):
                return None
            return await vault.set_passphrase(_prompt_phrases(confirm=True))

    result = _run(run())
    if result is None:
        raise SystemExit(1)
    if result.success:
        console.print(f"[green]Passphrase set (key {result.key_id}, {result.entropy_bits:.0f} bits)[/green]")
    else:
        console.print(f"[red]Passphrase rejected: {result.message}[/red]")
        raise SystemExit(1)


@passphrase.command(name="verify")
@click.pass_context
def verify_passphrase(ctx):
    """Check a passphrase against the stored key."""
    phrases = _prompt_phrases()

    async def run():
        async with _open_vault(ctx) as vault:
            return await vault.verify_passphrase(phrases)

    result = _run(run())
    if result.success:
        console.print(f"[green]✓ Passphrase verified (key {result.key_id})[/green]")
    else:
        logger.debug(f"Verification failed: {result.reason}")
        console.print(f"[red]✗ {result.message}[/red]")
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
