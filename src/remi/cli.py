"""
remi CLI - command-line interface for the unified agent memory store.

Exit codes: 0 success, 1 operation failure, 2 usage error, 3 data-integrity
or archive verification failure.
"""

import json
import re
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from remi.config import Settings
from remi.logging_config import setup_logging
from remi.render import OutputFormat

EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTEGRITY = 3

app = typer.Typer(
    name="remi",
    help="remi - Unified memory for coding agent transcripts",
    no_args_is_help=True,
)
sessions_app = typer.Typer(help="Browse stored sessions", no_args_is_help=True)
archive_app = typer.Typer(help="Plan, execute and restore archives", no_args_is_help=True)
app.add_typer(sessions_app, name="sessions")
app.add_typer(archive_app, name="archive")

console = Console()

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw])\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
    "w": "weeks",
}


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as ``30d``, ``12h`` or ``2w``.

    Raises:
        typer.BadParameter: If the value is not a number followed by s/m/h/d/w
    """
    match = _DURATION_RE.match(value)
    if not match:
        raise typer.BadParameter(
            f"Invalid duration {value!r}; use a number followed by s, m, h, d or w"
        )
    amount, unit = match.groups()
    return timedelta(**{_DURATION_UNITS[unit.lower()]: int(amount)})


def _load_settings() -> Settings:
    config = Settings()
    # Initialize logging (fallback to console if file logging not permitted)
    try:
        setup_logging(context="cli", config=config)
    except PermissionError:
        import logging

        logging.basicConfig(level=logging.INFO)
    return config


@contextmanager
def _open_store(config: Settings) -> Iterator:
    from remi.db.connection import create_store_engine, init_db

    engine = create_store_engine(config.database_path)
    try:
        init_db(engine)
        yield engine
    finally:
        engine.dispose()


def _fail(message: str, code: int = EXIT_FAILURE) -> typer.Exit:
    console.print(f"[bold red]Error:[/bold red] {escape(message)}")
    return typer.Exit(code)


def _embedder_or_exit(config: Settings):
    from remi.embeddings import get_embedder

    try:
        return get_embedder(config)
    except ImportError as e:
        raise _fail(str(e))


@app.command()
def init() -> None:
    """
    Create the data directory and the store schema.
    """
    config = _load_settings()
    with _open_store(config):
        pass
    config.archive_directory.mkdir(parents=True, exist_ok=True)
    console.print("[green]✓ Store initialized[/green]")
    console.print(f"  Database: {escape(str(config.database_path))}")
    console.print(f"  Archive:  {escape(str(config.archive_directory))}")


@app.command()
def sync(
    agent: str = typer.Option("all", help="Agent to sync, or 'all'"),
    json_output: bool = typer.Option(False, "--json", help="Print results as JSON"),
) -> None:
    """
    Ingest new transcript records from agent sources.

    Only records past each agent's checkpoint are read; re-running is safe.
    """
    from remi.adapters import build_default_registry
    from remi.exceptions import RemiError, UnknownAgentError
    from remi.pipeline.ingestion import IngestionEngine

    config = _load_settings()
    registry = build_default_registry(config)
    embedder = _embedder_or_exit(config)

    with _open_store(config) as engine:
        ingestion = IngestionEngine(engine, registry, config, embedder=embedder)
        with console.status(f"Syncing {escape(agent)}..."):
            if agent == "all":
                results = ingestion.sync_all()
            else:
                try:
                    results = [ingestion.sync(agent)]
                except UnknownAgentError as e:
                    raise _fail(str(e), EXIT_USAGE)
                except RemiError as e:
                    raise _fail(str(e))

    table = Table(title="Sync results")
    table.add_column("Agent")
    table.add_column("Locations", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Messages", justify="right")
    table.add_column("Dropped", justify="right")
    table.add_column("Status")
    for result in results:
        if result.error:
            status = f"[red]✗ {escape(result.error)}[/red]"
        elif result.unreadable_locations:
            status = f"[yellow]⚠ {len(result.unreadable_locations)} unreadable[/yellow]"
        else:
            status = "[green]✓[/green]"
        table.add_row(
            escape(result.agent),
            str(result.locations),
            str(result.records),
            str(result.messages),
            str(result.dropped_records),
            status,
        )
    if json_output:
        typer.echo(json.dumps([result.to_dict() for result in results], indent=2))
    else:
        console.print(table)

    if any(not result.ok for result in results):
        raise typer.Exit(EXIT_FAILURE)


@sessions_app.command("list")
def sessions_list(
    agent: Optional[str] = typer.Option(None, help="Only sessions from this agent"),
    limit: int = typer.Option(20, min=1, help="Maximum sessions to show"),
) -> None:
    """
    List sessions, most recently updated first.
    """
    from remi.db.connection import get_session
    from remi.db.repositories import SessionRepository

    config = _load_settings()
    with _open_store(config) as engine, get_session(engine) as db:
        sessions = SessionRepository(db).list(agent=agent, limit=limit)

    if not sessions:
        console.print("[yellow]No sessions found[/yellow]")
        return

    table = Table()
    table.add_column("ID")
    table.add_column("Agent")
    table.add_column("Title")
    table.add_column("Updated")
    for session in sessions:
        table.add_row(
            session.id[:12],
            escape(session.agent),
            escape(session.title or session.native_key),
            session.updated_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@sessions_app.command("show")
def sessions_show(
    session_id: str = typer.Argument(..., help="Session id or unique id prefix"),
    output_format: OutputFormat = typer.Option(
        OutputFormat.PLAIN, "--format", help="Output format"
    ),
) -> None:
    """
    Show one session with its messages.
    """
    from remi.db.connection import get_session
    from remi.db.repositories import SessionRepository
    from remi.render import SessionView, render_session

    config = _load_settings()
    with _open_store(config) as engine, get_session(engine) as db:
        matches = SessionRepository(db).get_by_prefix(session_id)
        if not matches:
            raise _fail(f"Session not found: {session_id}")
        if len(matches) > 1:
            raise _fail(f"Ambiguous session id prefix: {session_id}", EXIT_USAGE)
        view = SessionView.load(db, matches[0])
        output = render_session(view, output_format)

    typer.echo(output, nl=False)


@app.command()
def search(
    query: str = typer.Argument(..., help="Free-text query"),
    output_format: str = typer.Option(
        "table", "--format", help="Output format: table, json or plain"
    ),
    agent: Optional[str] = typer.Option(None, help="Only sessions from this agent"),
    title: Optional[str] = typer.Option(None, help="Session title contains"),
    session: Optional[str] = typer.Option(None, help="Session id prefix"),
    contains: Optional[str] = typer.Option(None, help="Message content contains"),
    limit: Optional[int] = typer.Option(None, min=1, help="Maximum sessions"),
) -> None:
    """
    Search sessions by relevance and recency.
    """
    from remi.search import SearchEngine, SearchFilters

    if output_format not in {"table", "json", "plain"}:
        raise _fail(f"Unknown format: {output_format}", EXIT_USAGE)

    config = _load_settings()
    embedder = _embedder_or_exit(config)
    filters = SearchFilters(agent=agent, title=title, session_id=session, contains=contains)
    with _open_store(config) as engine:
        hits = SearchEngine(engine, config, embedder).search(query, filters, limit)

    if output_format == "json":
        typer.echo(json.dumps([hit.to_dict() for hit in hits], indent=2, ensure_ascii=False))
        return
    if output_format == "plain":
        for hit in hits:
            typer.echo(
                f"{hit.session_id}\t{hit.agent}\t{hit.score:.6f}\t"
                f"{hit.title or ''}\t{hit.snippet}"
            )
        return

    if not hits:
        console.print("[yellow]No matches[/yellow]")
        return
    table = Table(title=f"Results for {escape(query)}")
    table.add_column("#", justify="right")
    table.add_column("Session")
    table.add_column("Agent")
    table.add_column("Title")
    table.add_column("Updated")
    table.add_column("Snippet")
    for position, hit in enumerate(hits, start=1):
        table.add_row(
            str(position),
            hit.session_id[:12],
            escape(hit.agent),
            escape(hit.title or ""),
            hit.updated_at.strftime("%Y-%m-%d"),
            escape(hit.snippet),
        )
    console.print(table)


@archive_app.command("plan")
def archive_plan(
    older_than: str = typer.Option(..., "--older-than", help="Minimum age, e.g. 30d"),
    keep_latest: int = typer.Option(
        0, "--keep-latest", min=0, help="Newest sessions per agent to always keep"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
) -> None:
    """
    Select sessions to archive and record the selection as a new run.
    """
    from remi.adapters import build_default_registry
    from remi.archive import ArchiveEngine

    age = parse_duration(older_than)
    config = _load_settings()
    with _open_store(config) as engine:
        plan = ArchiveEngine(engine, build_default_registry(config), config).plan(
            age, keep_latest
        )

    if as_json:
        typer.echo(json.dumps(plan.to_dict(), indent=2))
        return

    console.print(f"[bold blue]Planned archive run:[/bold blue] {plan.run_id}")
    console.print(f"  Cutoff: {plan.cutoff.isoformat()}")
    console.print(f"  Keep latest: {plan.keep_latest}")
    console.print(f"  Sessions selected: {len(plan.sessions)}")
    for planned in plan.sessions:
        console.print(
            f"    {planned.session_id[:12]}  {escape(planned.agent)}  "
            f"{planned.updated_at.strftime('%Y-%m-%d')}  {escape(planned.title or '')}"
        )


@archive_app.command("run")
def archive_run(
    plan_id: str = typer.Option(..., "--plan", help="Planned run id"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report only"),
    execute: bool = typer.Option(False, "--execute", help="Write the archive"),
    delete_source: bool = typer.Option(
        False, "--delete-source", help="Delete archived sessions after verification"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """
    Dry-run or execute a planned archive run.

    Without --execute nothing is written. With --delete-source, sessions are
    removed from the store only after every archived file was verified.
    """
    from remi.adapters import build_default_registry
    from remi.archive import ArchiveEngine
    from remi.exceptions import (
        ArchiveRunNotFoundError,
        ArchiveVerificationError,
        RemiError,
    )

    config = _load_settings()
    with _open_store(config) as engine:
        archive = ArchiveEngine(engine, build_default_registry(config), config)
        try:
            report = archive.run(
                plan_id, execute=execute, dry_run=dry_run, delete_source=delete_source
            )
        except ArchiveRunNotFoundError as e:
            raise _fail(str(e), EXIT_USAGE)
        except ArchiveVerificationError as e:
            raise _fail(f"{e}; nothing was deleted", EXIT_INTEGRITY)
        except RemiError as e:
            raise _fail(str(e))

    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return

    console.print(f"[bold]Archive run {report.run_id}[/bold]: {report.status.value}")
    console.print(f"  Sessions: {len(report.session_ids)}")
    if report.bundle_path:
        console.print(f"  Bundle: {escape(report.bundle_path)}")
        console.print(f"  Files verified: {report.files}")
        console.print(f"  Sessions deleted: {report.deleted}")
    elif delete_source:
        console.print("  Would delete the sessions after verification")


@archive_app.command("restore")
def archive_restore(
    bundle: Path = typer.Option(
        ..., "--bundle", exists=True, dir_okay=False, help="Path to bundle.json"
    ),
) -> None:
    """
    Load an archive bundle back into the store.
    """
    from remi.adapters import build_default_registry
    from remi.archive import ArchiveEngine
    from remi.exceptions import ArchiveVerificationError, RemiError

    config = _load_settings()
    with _open_store(config) as engine:
        archive = ArchiveEngine(engine, build_default_registry(config), config)
        try:
            report = archive.restore(bundle)
        except ArchiveVerificationError as e:
            raise _fail(str(e), EXIT_INTEGRITY)
        except RemiError as e:
            raise _fail(str(e))

    if not report.verified:
        console.print("[yellow]⚠ No manifest found; bundle was not verified[/yellow]")
    console.print(
        f"[green]✓ Restored[/green] {report.sessions} sessions, "
        f"{report.messages} messages"
    )


@archive_app.command("list")
def archive_list(
    limit: int = typer.Option(20, min=1, help="Maximum runs to show"),
) -> None:
    """
    List archive runs, newest first.
    """
    from remi.db.connection import get_session
    from remi.db.repositories import ArchiveRepository

    config = _load_settings()
    with _open_store(config) as engine, get_session(engine) as db:
        runs = ArchiveRepository(db).list_runs(limit)
        rows = [
            (run.id, run.status.value, run.created_at, len(run.items), run.error_message)
            for run in runs
        ]

    table = Table()
    table.add_column("Run")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Sessions", justify="right")
    table.add_column("Error")
    for run_id, status, created_at, items, error in rows:
        table.add_row(
            run_id,
            status,
            created_at.strftime("%Y-%m-%d %H:%M"),
            str(items),
            escape(error or ""),
        )
    console.print(table)


@app.command()
def embed(
    rebuild: bool = typer.Option(
        False, "--rebuild", help="Drop every vector and embed all messages again"
    ),
    batch_size: int = typer.Option(256, min=1, help="Messages per transaction"),
) -> None:
    """
    Compute message embeddings for semantic search.

    Requires REMI_SEMANTIC_ENABLED=true and the `semantic` extra.
    """
    from remi.pipeline.embeddings import embed_pending, rebuild_embeddings

    config = _load_settings()
    embedder = _embedder_or_exit(config)
    if embedder is None:
        raise _fail("Semantic search is disabled (set REMI_SEMANTIC_ENABLED=true)")

    run = rebuild_embeddings if rebuild else embed_pending
    with _open_store(config) as engine:
        with console.status("Embedding messages..."):
            written = run(engine, embedder, batch_size=batch_size)
    console.print(f"[green]✓ Embedded {written} messages[/green] ({embedder.model_name})")


@app.command()
def doctor(
    rebuild_index: bool = typer.Option(
        False, "--rebuild-index", help="Rebuild the search index from messages"
    ),
) -> None:
    """
    Check store integrity and print corpus statistics.
    """
    from remi.db.connection import db_session, get_session
    from remi.db.integrity import check_integrity
    from remi.exceptions import IntegrityError
    from remi.db.repositories import (
        CheckpointRepository,
        EmbeddingRepository,
        SearchIndexRepository,
        SessionRepository,
    )

    config = _load_settings()
    with _open_store(config) as engine:
        if rebuild_index:
            with db_session(engine) as db:
                rows = SearchIndexRepository(db).rebuild()
            console.print(f"[green]✓ Rebuilt search index[/green] ({rows} rows)")

        report = check_integrity(engine)
        with get_session(engine) as db:
            by_agent = SessionRepository(db).count_by_agent()
            embeddings = EmbeddingRepository(db).count()
            cursors = CheckpointRepository(db).all_cursors()

    console.print(f"[bold]Store:[/bold] {escape(str(config.database_path))}")
    table = Table(title="Corpus")
    table.add_column("Agent")
    table.add_column("Sessions", justify="right")
    table.add_column("Checkpoint")
    for agent in sorted(set(by_agent) | set(cursors)):
        cursor = cursors.get(agent)
        table.add_row(
            escape(agent),
            str(by_agent.get(agent, 0)),
            cursor.timestamp.isoformat() if cursor else "-",
        )
    console.print(table)
    console.print(f"  Messages: {report.message_count}")
    console.print(f"  Search index rows: {report.index_count}")
    console.print(f"  Embeddings: {embeddings}")

    if report.index_drift:
        console.print(
            f"[yellow]⚠ Search index drift of {report.index_drift} rows; "
            "run `remi doctor --rebuild-index`[/yellow]"
        )
    try:
        report.raise_for_problems()
    except IntegrityError as e:
        for problem in e.problems:
            console.print(f"[red]✗ {escape(problem)}[/red]")
        raise typer.Exit(EXIT_INTEGRITY)
    console.print("[green]✓ Integrity check passed[/green]")


if __name__ == "__main__":
    app()
