"""Command-line interface for Candidate Match."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.theme import Theme

from candidate_match import __version__
from candidate_match.config import Config, load_config
from candidate_match.database import Database
from candidate_match.orchestrator import create_orchestrator
from candidate_match.schemas import Consultant, CvScore, MatchStatus, ProjectRequest

custom_theme = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
})

console = Console(theme=custom_theme)

_STATUS_STYLE = {
    MatchStatus.PENDING: "warning",
    MatchStatus.RUNNING: "info",
    MatchStatus.COMPLETED: "success",
    MatchStatus.FAILED: "error",
}


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


@click.group()
@click.option("--env-file", type=click.Path(dir_okay=False), default=None, help="Path to a .env file.")
@click.version_option(__version__, prog_name="candidate-match")
@click.pass_context
def cli(ctx: click.Context, env_file: str | None) -> None:
    """Match project requests against consultant CVs."""
    config = load_config(env_file)
    setup_logging(config.log_level)
    ctx.obj = config


@cli.command("init-db")
@click.pass_obj
def init_db(config: Config) -> None:
    """Create the database tables."""
    Database(config.db_path)
    console.print(f"[success]Database ready at {config.db_path}[/success]")


@cli.command("import")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def import_data(config: Config, file: Path) -> None:
    """Import project requests, consultants and CV scores from a JSON file."""
    try:
        data = json.loads(file.read_text(encoding="utf-8"))
        requests = [ProjectRequest.model_validate(r) for r in data.get("project_requests", [])]
        consultants = [Consultant.model_validate(c) for c in data.get("consultants", [])]
        scores = [CvScore.model_validate(s) for s in data.get("cv_scores", [])]
    except (json.JSONDecodeError, ValidationError, AttributeError) as e:
        console.print(f"[error]Invalid import file: {e}[/error]")
        sys.exit(1)

    db = Database(config.db_path)
    for req in requests:
        db.save_project_request(req)
    for consultant in consultants:
        db.save_consultant(consultant)
    for entry in scores:
        db.save_cv_score(entry.user_id, entry.score)

    console.print(
        f"[success]Imported {len(requests)} project requests, {len(consultants)} consultants "
        f"and {len(scores)} CV scores.[/success]"
    )


@cli.command("requests")
@click.pass_obj
def list_requests(config: Config) -> None:
    """List project requests."""
    summaries = Database(config.db_path).list_project_requests()
    if not summaries:
        console.print("[warning]No project requests yet.[/warning]")
        return

    table = Table(title="Project Requests")
    table.add_column("ID", justify="right", style="cyan")
    table.add_column("Title")
    table.add_column("Customer")
    table.add_column("Created")
    for s in summaries:
        table.add_row(str(s.id), s.title, s.customer_name, s.created_at.strftime("%Y-%m-%d %H:%M"))
    console.print(table)


@cli.command()
@click.argument("project_request_id", type=int)
@click.option("--force", is_flag=True, help="Recompute even if results exist.")
@click.option("--wait", "wait_for", is_flag=True, help="Wait for the run to finish.")
@click.pass_obj
def trigger(config: Config, project_request_id: int, force: bool, wait_for: bool) -> None:
    """Start matching for a project request."""
    orch = create_orchestrator(config)
    try:
        if orch.db.get_project_request(project_request_id) is None:
            console.print(f"[error]Project request {project_request_id} not found.[/error]")
            sys.exit(1)
        ack = orch.trigger_async(project_request_id, force_recompute=force)
        console.print(f"[info]{ack.message}[/info]")
        if wait_for:
            with console.status("Matching..."):
                orch.wait(project_request_id)
            _print_status(orch.get_status(project_request_id))
    finally:
        orch.shutdown(wait=True)


@cli.command()
@click.argument("project_request_id", type=int)
@click.option("--limit", default=10, show_default=True, help="Number of candidates to show.")
@click.pass_obj
def matches(config: Config, project_request_id: int, limit: int) -> None:
    """Show the latest matches for a project request."""
    orch = create_orchestrator(config)
    try:
        top = orch.get_matches_for_project(project_request_id, limit=limit)
    finally:
        orch.shutdown(wait=False)

    if top is None:
        console.print(f"[warning]No match results for project request {project_request_id} yet.[/warning]")
        return

    table = Table(title=f"Matches: {top.project_title} ({top.total_matches} total)")
    table.add_column("#", justify="right")
    table.add_column("Consultant", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Reasons")
    for i, m in enumerate(top.matches, 1):
        score = int(m.match_score * 100)
        color = "green" if score >= 70 else "yellow" if score >= 40 else "red"
        table.add_row(str(i), m.consultant_name, f"[{color}]{score}[/{color}]", "\n".join(m.reasons) or m.explanation)
    console.print(table)


@cli.command()
@click.argument("project_request_id", type=int)
@click.pass_obj
def status(config: Config, project_request_id: int) -> None:
    """Show the matching status for a project request."""
    orch = create_orchestrator(config)
    try:
        _print_status(orch.get_status(project_request_id))
    finally:
        orch.shutdown(wait=False)


@cli.command("forget-artifact")
@click.argument("consultant_id", type=int)
@click.pass_obj
def forget_artifact(config: Config, consultant_id: int) -> None:
    """Drop a consultant's cached CV upload."""
    orch = create_orchestrator(config)
    try:
        cleared = orch.forget_artifact(consultant_id)
    finally:
        orch.shutdown(wait=False)
    if cleared:
        console.print(f"[success]Cleared cached artifact for consultant {consultant_id}.[/success]")
    else:
        console.print(f"[warning]No cached artifact for consultant {consultant_id}.[/warning]")


def _print_status(report) -> None:
    style = _STATUS_STYLE[report.status]
    body = f"Status: [{style}]{report.status.value}[/{style}]"
    if report.last_updated:
        body += f"\nLast updated: {report.last_updated.strftime('%Y-%m-%d %H:%M:%S')}"
    if report.error:
        body += f"\nLast error: {report.error}"
    console.print(Panel(body, title=f"Project request {report.project_request_id}", border_style="cyan"))


def main() -> None:
    """Entry point for the candidate-match CLI."""
    cli()


if __name__ == "__main__":
    main()
