"""Command line interface for ExperienceHub."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from experiencehub.auth import Identity, LocalIdentityProvider, SessionState
from experiencehub.config import AppConfig
from experiencehub.errors import ExperienceHubError
from experiencehub.index.filters import FilterState
from experiencehub.models import AssessmentType, ExperienceType, Result, display_label
from experiencehub.service import ExperienceHub
from experiencehub.utils.html import sanitize_markup
from experiencehub.web.app import app as web_app


console = Console()
app = typer.Typer(help="ExperienceHub - share internship and placement experiences")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _config(db: Path | None) -> AppConfig:
    config = AppConfig.from_env()
    if db is not None:
        config.db_path = db
        config.media_root = db.parent / "storage"
    return config


def _open_hub(config: AppConfig, identity: Identity | None = None) -> ExperienceHub:
    provider = LocalIdentityProvider()
    session = SessionState(config.allowed_email_domain)
    session.start(provider)
    if identity is not None:
        provider.sign_in(identity)
        if session.snapshot is None:
            raise typer.BadParameter(f"Only {config.allowed_email_domain} email addresses are allowed")
    return ExperienceHub.open(config, session, Path.cwd())


@app.command("list")
def list_experiences(
    query: str = typer.Argument("", help="Free-text search"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    company: Optional[str] = typer.Option(None, help="Exact company name"),
    experience_type: Optional[str] = typer.Option(None, "--type", help="intern or placement"),
    assessment_type: Optional[str] = typer.Option(None, "--assessment", help="online_assessment or interview"),
    result: Optional[str] = typer.Option(None, help="selected, waitlisted or rejected"),
    year: Optional[int] = typer.Option(None, help="Graduating year"),
    branch: Optional[str] = typer.Option(None, help="Branch (substring match)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Search and filter shared experiences."""
    _setup_logging(verbose)
    requested = {
        "company": company,
        "experience_type": experience_type,
        "assessment_type": assessment_type,
        "result": result,
        "graduating_year": year,
        "branch": branch,
    }
    state = FilterState(
        search_text=query,
        selections={name: value for name, value in requested.items() if value is not None},
    )
    hub = _open_hub(_config(db))
    try:
        experiences = hub.browse(state)
    finally:
        hub.close()

    if not experiences:
        console.print("[yellow]No experiences found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID")
    table.add_column("Company")
    table.add_column("Type")
    table.add_column("Assessment")
    table.add_column("Candidate")
    table.add_column("Year")
    table.add_column("Branch")
    table.add_column("Result")
    table.add_column("Images")

    for experience in experiences:
        table.add_row(
            experience.id[:8],
            experience.company_name,
            display_label(ExperienceType, experience.experience_type),
            display_label(AssessmentType, experience.assessment_type),
            experience.candidate_name,
            str(experience.graduating_year or ""),
            experience.branch or "",
            display_label(Result, experience.result),
            str(len(experience.images)),
        )

    console.print(table)


@app.command()
def facets(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Show the values available for each filter."""
    hub = _open_hub(_config(db))
    try:
        values = hub.facets()
    finally:
        hub.close()

    for name, options in values.items():
        rendered = ", ".join(str(option) for option in options) or "-"
        console.print(f"[bold]{name}[/bold]: {rendered}")


@app.command()
def show(
    record_id: str = typer.Argument(..., help="Experience id"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
) -> None:
    """Print one experience with its sanitised markup."""
    hub = _open_hub(_config(db))
    try:
        experience = hub.get(record_id)
    except ExperienceHubError as exc:
        raise typer.BadParameter(str(exc)) from exc
    finally:
        hub.close()

    console.print(f"[bold]{experience.company_name}[/bold] ({experience.candidate_name})")
    console.print(
        f"{display_label(ExperienceType, experience.experience_type)} / "
        f"{display_label(AssessmentType, experience.assessment_type)} / "
        f"{display_label(Result, experience.result)}"
    )
    console.print(sanitize_markup(experience.experience_description), markup=False)
    if experience.additional_tips:
        console.print("[bold]Tips[/bold]")
        console.print(sanitize_markup(experience.additional_tips), markup=False)
    for image in experience.images:
        console.print(f"- {image.image_name or 'image'}: {image.image_url}", markup=False)


@app.command()
def delete(
    record_id: str = typer.Argument(..., help="Experience id"),
    user_id: str = typer.Option(..., "--user-id", help="Id of the owner"),
    email: str = typer.Option(..., "--email", help="E-mail of the owner"),
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Delete an experience and all of its images."""
    _setup_logging(verbose)
    hub = _open_hub(_config(db), Identity(user_id=user_id, email=email))
    try:
        report = hub.delete(record_id)
    except ExperienceHubError as exc:
        console.print(f"[red]Delete failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        hub.close()

    console.print(
        f"Deleted {record_id}: {report.metadata_removed} image rows, "
        f"{len(report.storage_removed)} stored files."
    )
    if report.storage_errors:
        console.print(f"[yellow]Storage cleanup left {len(report.storage_errors)} error(s), run prune later.[/yellow]")


@app.command()
def prune(
    db: Path = typer.Option(None, "--db", help="SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Remove stored images that no experience references any more."""
    _setup_logging(verbose)
    config = _config(db)
    resolved_db = config.resolve_db_path(Path.cwd())
    if not resolved_db.exists():
        console.print("[yellow]Database not found, nothing to prune.[/yellow]")
        return

    hub = _open_hub(config)
    try:
        stats = hub.prune_orphans()
    finally:
        hub.close()
    console.print(f"Removed {len(stats.removed)} orphaned files.")
    if stats.failed:
        console.print(f"[yellow]Could not remove {len(stats.failed)} files.[/yellow]")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
) -> None:
    """Start the web interface."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    console.print(f"Starting web interface on http://{host}:{port}")
    uvicorn.run(
        web_app,
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )
