"""
CLI Main - Typer command-line interface.
========================================

Commands:
- ask: Answer one question through the full pipeline
- chat: Interactive session
- settings: Show / set / unset persisted runtime settings
- info: Show system information
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from course_ta.shared.logging import get_logger

logger = get_logger(__name__)

app = typer.Typer(
    name="courseta",
    help="""🎓 CourseTA - Course-scoped question answering over File Search

Answers student questions strictly from the course materials indexed in a
Gemini File Search store, and reports whether each answer is grounded.

━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

COMMANDS OVERVIEW:

  ask       Answer one question
            -s, --session   Session id (keeps conversation context)
            -w, --week      Scope to a course week
            -t, --type      Scope to a document type (e.g. syllabus)
            --debug         Show per-attempt retrieval diagnostics
            --sse           Print the raw event stream instead

  chat      Interactive session in the terminal

  settings  Persisted runtime settings (models, File Search store)

  info      Show configuration and data paths

━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

QUICK START:

  export GEMINI_API_KEY=...
  export FILE_SEARCH_STORE_NAME=fileSearchStores/...
  courseta ask "מה זה תועלתנות?"
""",
    add_completion=False,
    rich_markup_mode="rich",
)

settings_app = typer.Typer(help="Show and change persisted runtime settings.")
app.add_typer(settings_app, name="settings")

console = Console()

STATUS_STYLES = {
    "grounded": ("✓ Grounded", "green"),
    "weak": ("~ Weakly grounded", "yellow"),
    "not_found": ("✗ Not found in course material", "red"),
    "not_applicable": ("· Not applicable", "dim"),
}


@app.callback()
def main(
    verbose: bool = typer.Option(
        False,
        "--verbose", "-v",
        help="Log at DEBUG level.",
    ),
):
    """Configure logging from settings before any command runs."""
    from course_ta.shared.config import get_settings
    from course_ta.shared.logging import setup_logging

    settings = get_settings()
    setup_logging(
        level="DEBUG" if verbose else settings.get_effective_log_level(),
        use_rich=settings.logging.rich_console,
        log_file=settings.logging.file or None,
        log_format=settings.logging.format,
        force=True,
    )


def _print_result(result, show_debug: bool = False) -> None:
    """Render an AnswerResult with Rich."""
    label, style = STATUS_STYLES[result.grounding_status.value]
    console.print(Panel(result.answer, title="💬 Answer", border_style=style))
    console.print(f"[{style}]{label}[/{style}]  [dim]session: {result.session_id}[/dim]")

    if result.citations:
        console.print("\n[bold]📚 Sources:[/bold]")
        table = Table(show_header=True)
        table.add_column("Source", style="cyan")
        table.add_column("Week")
        table.add_column("Quote", overflow="fold")
        for citation in result.citations:
            table.add_row(citation.label, citation.week, citation.quote)
        console.print(table)

    if show_debug and result.debug:
        diag = result.debug.get("diag", {})
        console.print(
            f"\n[bold]🔎 Retrieval:[/bold] picked={diag.get('picked')} "
            f"calls={diag.get('calls')} requests={diag.get('requests')} "
            f"filter={diag.get('metadataFilter') or '-'}"
        )
        table = Table(show_header=True)
        for column in ("Stage", "Dialect", "Refs", "Supports", "Coverage", "Finish", "Dup"):
            table.add_column(column)
        for stage, candidate in diag.get("candidates", {}).items():
            if candidate is None:
                continue
            table.add_row(
                stage,
                candidate["dialect"],
                str(candidate["refs_count"]),
                str(candidate["supports_count"]),
                f"{candidate['coverage']:.3f}",
                candidate["finish_reason"] or "-",
                str(candidate["duplicate_prefix_count"]),
            )
        console.print(table)


# ─────────────────────────────────────────────────────────────────────────────
# Ask Command
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def ask(
    question: str = typer.Argument(
        ...,
        help="Question about the course material (wrap in quotes).",
    ),
    session: Optional[str] = typer.Option(
        None,
        "--session", "-s",
        help="Session id. Reuse it to keep conversational context.",
    ),
    week: str = typer.Option(
        "",
        "--week", "-w",
        help="Scope the question to a course week.",
    ),
    doc_type: str = typer.Option(
        "",
        "--type", "-t",
        help="Scope the question to a document type.",
    ),
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Show per-attempt retrieval diagnostics.",
    ),
    sse: bool = typer.Option(
        False,
        "--sse",
        help="Print the server-sent-events stream (chunks, meta, [DONE]).",
    ),
):
    """
    💬 Answer one question.

    Runs classification, context rewriting, up to three File Search
    attempts and the grounding check, then prints the answer with its
    grounding status.

    Examples:
        courseta ask "מה זה תועלתנות?"
        courseta ask "מה נלמד?" --week 3
        courseta ask "what are the grading requirements?" --debug
    """
    from course_ta.rag.assistant import get_assistant
    from course_ta.rag.streaming import iter_sse

    if not question.strip():
        console.print("[red]Question must not be empty.[/red]")
        raise typer.Exit(1)

    assistant = get_assistant()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task("Searching course material...", total=None)
        result = assistant.answer(
            question, session_id=session, week=week, doc_type=doc_type, debug=debug
        )

    if sse:
        for line in iter_sse(result):
            sys.stdout.write(line)
            sys.stdout.flush()
        return

    _print_result(result, show_debug=debug)


# ─────────────────────────────────────────────────────────────────────────────
# Chat Command
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def chat(
    session: Optional[str] = typer.Option(
        None,
        "--session", "-s",
        help="Session id to resume.",
    ),
):
    """
    🗨️ Interactive chat over one session.

    Type a question and press Enter. Empty input or Ctrl+D exits.
    """
    import uuid

    from course_ta.rag.assistant import get_assistant

    assistant = get_assistant()
    session_id = session or uuid.uuid4().hex
    console.print(f"[dim]Session: {session_id} (empty line to exit)[/dim]\n")

    while True:
        try:
            question = console.input("[bold cyan]❯ [/bold cyan]").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            break
        if not question:
            break

        result = assistant.answer(question, session_id=session_id)
        _print_result(result)
        console.print()


# ─────────────────────────────────────────────────────────────────────────────
# Settings Commands
# ─────────────────────────────────────────────────────────────────────────────


def _settings_store():
    from course_ta.shared.config import get_settings
    from course_ta.store.settings_store import JsonSettingsStore

    return JsonSettingsStore(get_settings().resolved_paths.settings_file)


@settings_app.command("show")
def settings_show():
    """Show persisted settings and the resolved runtime configuration."""
    from course_ta.shared.runtime import KNOWN_SETTINGS, ConfigProvider

    store = _settings_store()
    persisted = store.all_settings()

    table = Table(title="Persisted settings")
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    for key in KNOWN_SETTINGS:
        table.add_row(key, persisted.get(key, "[dim]-[/dim]"))
    console.print(table)

    runtime = ConfigProvider(store).resolve()
    console.print(f"\n[bold]Retrieval model:[/bold] {runtime.retrieval_model}")
    console.print(f"[bold]Greeting model:[/bold]  {runtime.greeting_model}")
    console.print(f"[bold]Store:[/bold]           {runtime.store_name or '[red]not set[/red]'}")


@settings_app.command("set")
def settings_set(
    key: str = typer.Argument(..., help="Setting key."),
    value: str = typer.Argument(..., help="Setting value."),
):
    """Persist a runtime setting."""
    from course_ta.shared.runtime import KNOWN_SETTINGS

    if key not in KNOWN_SETTINGS:
        console.print(f"[red]Unknown setting: {key}[/red] (known: {', '.join(KNOWN_SETTINGS)})")
        raise typer.Exit(1)

    _settings_store().set_setting(key, value.strip())
    console.print(f"[green]✓[/green] {key} = {value.strip()}")


@settings_app.command("unset")
def settings_unset(
    key: str = typer.Argument(..., help="Setting key."),
):
    """Remove a persisted runtime setting."""
    if _settings_store().unset_setting(key):
        console.print(f"[green]✓[/green] {key} removed")
    else:
        console.print(f"[yellow]{key} was not set[/yellow]")


# ─────────────────────────────────────────────────────────────────────────────
# Info Command
# ─────────────────────────────────────────────────────────────────────────────


@app.command()
def info():
    """
    ℹ️ Show system information and configuration.

    Displays:
      • Version information
      • Resolved runtime configuration (API key masked)
      • Data paths and their existence status
    """
    from course_ta import __version__
    from course_ta.shared.config import get_settings
    from course_ta.shared.runtime import ConfigProvider
    from course_ta.shared.utils import mask_secret

    settings = get_settings()
    runtime = ConfigProvider(_settings_store(), settings).resolve()

    console.print(Panel(
        f"[bold]CourseTA[/bold]\n"
        f"Version: {__version__}\n"
        f"Course: {settings.course.name}\n"
        f"Config: config/settings.yaml",
        title="ℹ️ Info",
    ))

    table = Table(title="Runtime")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("API key", mask_secret(runtime.api_key) or "[red]missing[/red]")
    table.add_row("File Search store", runtime.store_name or "[red]missing[/red]")
    table.add_row("Retrieval model", runtime.retrieval_model)
    table.add_row("Greeting model", runtime.greeting_model)
    console.print(table)

    console.print("\n[bold]Data Paths:[/bold]")
    resolved_paths = settings.resolved_paths
    path_dict = {
        "data_dir": resolved_paths.data_dir,
        "settings_file": resolved_paths.settings_file,
        "conversations_file": resolved_paths.conversations_file,
        "analytics_file": resolved_paths.analytics_file,
    }
    for name, path in path_dict.items():
        exists = "✓" if path.exists() else "✗"
        console.print(f"  {name}: {path} [{exists}]")


# ─────────────────────────────────────────────────────────────────────────────
# Entry Point
# ─────────────────────────────────────────────────────────────────────────────


def cli():
    """CLI entry point."""
    app()


if __name__ == "__main__":
    cli()
