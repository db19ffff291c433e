"""Typer CLI application for Clinic SEO Audit.

Provides commands to run a technical audit for a clinic, browse stored
audit history, and prepare the local database.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from clinic_audit.modules.technical_audit.aggregator import grade_for
from clinic_audit.modules.technical_audit.errors import AuditError, InvalidRequestError
from clinic_audit.modules.technical_audit.records import ClinicAuditRecord, Severity

console = Console()
app = typer.Typer(
    name="clinic-audit",
    help="Clinic SEO Audit -- technical page audits, scoring, issues and recommendations.",
    add_completion=False,
    no_args_is_help=True,
)

_SEVERITY_STYLE = {
    Severity.CRITICAL: "bold red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "cyan",
}


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging level and format."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _run_async(coro):
    """Run an async coroutine from synchronous CLI context."""
    return asyncio.run(coro)


def _get_application(config: str):
    """Lazy-import and return an AuditApplication."""
    from clinic_audit.app import AuditApplication
    return AuditApplication(config_path=config)


def _print_record(record: ClinicAuditRecord) -> None:
    """Pretty-print an audit record using Rich."""
    grade = grade_for(record.score)
    partial = " [yellow](partial)[/yellow]" if record.partial else ""
    console.print(
        f"\n[bold]Overall score:[/bold] {record.score:.1f} / 100  "
        f"[bold]Grade:[/bold] {grade}{partial}"
    )

    scores = Table(title="Category Scores", show_header=True, header_style="bold magenta")
    scores.add_column("Category", style="cyan", min_width=15)
    scores.add_column("Score", justify="right")
    for category, value in record.category_scores().items():
        scores.add_row(category, f"{value:.1f}")
    console.print(scores)

    pages = Table(
        title=f"Pages ({len(record.auditable_pages)} audited, {len(record.unauditable_pages)} unauditable)",
        show_header=True,
        header_style="bold magenta",
    )
    pages.add_column("URL", style="cyan", max_width=60)
    pages.add_column("Composite", justify="right")
    pages.add_column("Details", max_width=50)
    for page in record.pages:
        if page.unauditable:
            detail = (page.failure or "every check errored")[:50]
            pages.add_row(page.url, "[red]✘ n/a[/red]", detail)
        else:
            errored = [c.value for c, r in page.results.items() if r.failed]
            detail = "errored: " + ", ".join(errored) if errored else ""
            pages.add_row(page.url, f"{page.composite_score:.1f}", detail)
    console.print(pages)

    seo_pages = [p for p in record.auditable_pages if p.seo_elements is not None]
    if seo_pages:
        seo = Table(title="SEO Elements", show_header=True, header_style="bold magenta")
        seo.add_column("URL", style="cyan", max_width=40)
        seo.add_column("Title", max_width=30)
        seo.add_column("Meta description")
        seo.add_column("H1", justify="right")
        seo.add_column("H2", justify="right")
        seo.add_column("Img w/o alt", justify="right")
        seo.add_column("Links int/ext", justify="right")
        seo.add_column("Canonical")
        for page in seo_pages:
            el = page.seo_elements
            seo.add_row(
                page.url,
                el.title or "[red]missing[/red]",
                "yes" if el.meta_description else "[red]missing[/red]",
                str(el.h1_count),
                str(el.h2_count),
                f"{el.images_missing_alt}/{el.image_count}",
                f"{el.internal_links}/{el.external_links}",
                "yes" if el.canonical_url else "no",
            )
        console.print(seo)

    if record.issues:
        issues = Table(title="Issues", show_header=True, header_style="bold magenta")
        issues.add_column("Severity", min_width=8)
        issues.add_column("Category", style="cyan")
        issues.add_column("Issue", max_width=40)
        issues.add_column("Pages", justify="right")
        for issue in record.issues:
            style = _SEVERITY_STYLE[issue.severity]
            issues.add_row(
                f"[{style}]{issue.severity.value}[/{style}]",
                issue.category.value,
                issue.title,
                str(len(issue.affected_pages)),
            )
        console.print(issues)
    else:
        console.print("[green]✔[/green] No issues found.")

    for rec in record.recommendations:
        body = rec.description + "\n" + "\n".join("  • " + s for s in rec.steps)
        console.print(Panel(body, title=f"[{rec.priority.value}] {rec.title}", expand=False))


# ------------------------------------------------------------------
# run
# ------------------------------------------------------------------
@app.command()
def run(
    clinic_id: str = typer.Argument(..., help="Clinic identifier."),
    urls: list[str] = typer.Argument(..., help="Page URLs to audit."),
    audit_type: Optional[str] = typer.Option(
        None, "--type", "-t", help="basic | comprehensive | performance | seo."
    ),
    profiles: Optional[list[str]] = typer.Option(
        None, "--profile", "-p", help="Viewport profile (desktop, mobile); repeatable."
    ),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Max pages in flight."),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Export the record as JSON."),
    no_save: bool = typer.Option(False, "--no-save", help="Do not store the snapshot."),
    config: str = typer.Option("config/settings.yaml", "--config", help="Settings file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run a technical audit across a clinic's pages."""
    _setup_logging(verbose)
    console.print(Panel(f"[bold cyan]Technical Audit: {clinic_id}[/bold cyan]"))

    application = _get_application(config)
    application.initialize(init_database=not no_save)
    auditor = application.auditor(persist=not no_save)

    async def _run():
        async with application.browser:
            return await auditor.run_audit(
                clinic_id,
                urls,
                audit_type,
                profiles or None,
                concurrency=concurrency,
            )

    with Progress(SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console) as progress:
        progress.add_task(description=f"Auditing {len(urls)} page(s)...", total=None)
        try:
            record = _run_async(_run())
        except InvalidRequestError as exc:
            console.print("[red]✘[/red] Invalid request: " + str(exc))
            raise typer.Exit(code=2)
        except AuditError as exc:
            console.print("[red]✘[/red] Audit failed: " + str(exc))
            raise typer.Exit(code=1)

    _print_record(record)
    if output:
        auditor.export_audit_record(record, output)
        console.print("[green]✔[/green] Exported to " + output)
    if record.record_id is not None:
        console.print(f"[green]✔[/green] Snapshot saved (id={record.record_id}).")


# ------------------------------------------------------------------
# history
# ------------------------------------------------------------------
@app.command()
def history(
    clinic_id: str = typer.Argument(..., help="Clinic identifier."),
    limit: int = typer.Option(10, "--limit", "-n", help="Number of snapshots to show."),
    config: str = typer.Option("config/settings.yaml", "--config", help="Settings file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Show stored audit snapshots for a clinic."""
    _setup_logging(verbose)
    application = _get_application(config)
    records = application.repository().history(clinic_id, limit=limit)
    if not records:
        console.print(f"[yellow]⚠[/yellow] No audits stored for {clinic_id}.")
        raise typer.Exit(code=0)

    table = Table(title=f"Audit History: {clinic_id}", show_header=True, header_style="bold magenta")
    table.add_column("ID", justify="right")
    table.add_column("Date", style="cyan")
    table.add_column("Type")
    table.add_column("Score", justify="right")
    table.add_column("Grade")
    table.add_column("Issues", justify="right")
    for rec in records:
        table.add_row(
            str(rec.record_id),
            rec.created_at.strftime("%Y-%m-%d %H:%M"),
            rec.audit_type.value + (" (partial)" if rec.partial else ""),
            f"{rec.score:.1f}",
            grade_for(rec.score),
            str(len(rec.issues)),
        )
    console.print(table)

    if len(records) >= 2:
        comparison = application.auditor().compare_audits(records[1], records[0])
        change = comparison["overall_change"]
        console.print(
            f"\n[bold]Latest vs previous:[/bold] {change['old']:.1f} -> {change['new']:.1f} "
            f"({change['diff']:+.1f})"
        )
        for issue in comparison["new_issues"]:
            console.print(f"  [red]+[/red] {issue['category']}: {issue['title']}")
        for issue in comparison["resolved_issues"]:
            console.print(f"  [green]-[/green] {issue['category']}: {issue['title']}")


# ------------------------------------------------------------------
# setup
# ------------------------------------------------------------------
@app.command()
def setup(
    config: str = typer.Option("config/settings.yaml", "--config", help="Settings file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Create the database tables and data directories."""
    _setup_logging(verbose)
    console.print(Panel("[bold cyan]Clinic SEO Audit Setup[/bold cyan]"))

    console.print("\n[bold]Step 1: Configuration[/bold]")
    if Path(config).exists():
        console.print(f"[green]✔[/green] {config} found.")
    else:
        console.print(f"[yellow]⚠[/yellow] {config} not found. Using defaults.")

    console.print("\n[bold]Step 2: Database and Directories[/bold]")
    application = _get_application(config)
    try:
        application.initialize()
        console.print("[green]✔[/green] Database tables created.")
    except Exception as exc:
        console.print("[red]✘[/red] Setup error: " + str(exc))
        raise typer.Exit(code=1)

    console.print("\n[bold green]Setup complete![/bold green]")
    console.print("Run [bold]playwright install chromium[/bold] once before the first audit.")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
