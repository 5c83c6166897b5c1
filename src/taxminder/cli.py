"""Taxminder CLI.

Usage:
    taxminder init
    taxminder client add acme "Acme Ltd" --year-end 2026-01-31 --vat --stagger 1
    taxminder client show acme
    taxminder deadlines
    taxminder rebuild [--client acme]
    taxminder process
    taxminder due
    taxminder rollover list
    taxminder rollover run [--client acme --filing corporation_tax_payment]
    taxminder records received acme vat_return
    taxminder records unreceived acme vat_return
    taxminder holidays
    taxminder detect "Q3 VAT return" "Please find attached the receipts"
"""

from __future__ import annotations

import logging
from datetime import date

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from taxminder import db
from taxminder.config import get_settings
from taxminder.errors import TaxminderError

app = typer.Typer(name="taxminder", help="UK filing deadlines and client reminder scheduling")
console = Console()

# Sub-command groups
client_app = typer.Typer(help="Client records")
rollover_app = typer.Typer(help="Advance finished filings to the next cycle")
records_app = typer.Typer(help="Records-received markers")
app.add_typer(client_app, name="client")
app.add_typer(rollover_app, name="rollover")
app.add_typer(records_app, name="records")

STATUS_COLORS = {
    "completed": "dim",
    "records_received": "green",
    "overdue": "red bold",
    "critical": "red",
    "approaching": "yellow",
    "scheduled": "blue",
    "no_deadline": "dim",
}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_date(value: str | None, label: str = "date") -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Invalid {label} {value!r}; expected YYYY-MM-DD.[/red]")
        raise typer.Exit(1)


def _fail(e: Exception):
    console.print(f"[red]{e}[/red]")
    raise typer.Exit(1)


# ---------------------------------------------------------------------------
# taxminder init / seed
# ---------------------------------------------------------------------------

@app.command()
def init():
    """Create the database and load the default reminder templates."""
    from taxminder.catalog import seed_templates

    settings = get_settings()
    with db.conn() as c:
        added = seed_templates(c)
    console.print(f"\n[green]Database ready:[/green] {settings.db_path}")
    console.print(f"  Templates added: {added}")
    console.print("\nNext: run [bold]taxminder client add[/bold] to onboard a client")


@app.command()
def seed(data_dir: str = typer.Option(None, help="Directory holding templates.yaml")):
    """Load default templates, keeping any that already exist."""
    from taxminder.catalog import seed_templates

    with db.conn() as c:
        added = seed_templates(c, data_dir)
    console.print(f"[green]{added} template(s) added.[/green]")


# ---------------------------------------------------------------------------
# taxminder client add / show
# ---------------------------------------------------------------------------

@client_app.command("add")
def client_add(
    client_id: str = typer.Argument(..., help="Short client id"),
    company_name: str = typer.Argument(..., help="Company or trading name"),
    client_type: str = typer.Option("Limited Company", "--type", help="Limited Company, Sole Trader, Partnership or LLP"),
    email: str = typer.Option("", help="Contact email"),
    year_end: str = typer.Option(None, "--year-end", help="Accounting year end (YYYY-MM-DD)"),
    vat: bool = typer.Option(False, "--vat/--no-vat", help="VAT registered"),
    stagger: int = typer.Option(None, "--stagger", help="VAT stagger group (1-3)"),
):
    """Onboard a client and derive its filing assignments."""
    from taxminder.catalog import onboard_client
    from taxminder.engine.queue_builder import rebuild_queue_for_client
    from taxminder.models import Client
    from taxminder.validation import field_errors

    try:
        client = Client(
            id=client_id, company_name=company_name, client_type=client_type, email=email,
            year_end_date=_parse_date(year_end, "year end"), vat_registered=vat,
            vat_stagger_group=stagger,
        )
    except ValidationError as e:
        console.print("[red]Invalid client:[/red]")
        for err in field_errors(e):
            console.print(f"  {err['field']}: {err['message']}")
        raise typer.Exit(1)

    with db.conn() as c:
        assignments = onboard_client(c, client)
        result = rebuild_queue_for_client(c, client.id)

    console.print(f"\n[green]Client onboarded:[/green] {client.id} ({client.company_name})")
    console.print(f"  Filings: {', '.join(a.filing_type_id.value for a in assignments) or 'none'}")
    console.print(f"  Reminders scheduled: {result.created}")


@client_app.command("show")
def client_show(client_id: str = typer.Argument(..., help="Client id")):
    """Show a client's filings and queued reminders."""
    from taxminder.catalog import filing_type_name

    with db.conn() as c:
        client = db.get_client(c, client_id)
        if client is None:
            _fail(TaxminderError(f"Client {client_id} not found."))
        entries = db.queue_entries(c, client_id=client_id)

    console.print(f"\n[bold]{client.company_name}[/bold]")
    console.print(f"  ID: {client.id}")
    console.print(f"  Type: {client.client_type.value}")
    if client.year_end_date:
        console.print(f"  Year end: {client.year_end_date}")
    if client.vat_registered:
        console.print(f"  VAT stagger group: {client.vat_stagger_group or 'not set'}")
    if client.reminders_paused:
        console.print("  [yellow]Reminders paused[/yellow]")

    table = Table(title=f"Reminders — {client.company_name}")
    table.add_column("Filing")
    table.add_column("Step", justify="right")
    table.add_column("Send")
    table.add_column("Deadline")
    table.add_column("Status")
    for e in entries:
        table.add_row(filing_type_name(e.filing_type_id), str(e.step_index + 1),
                      str(e.send_date), str(e.deadline_date), e.status.value)
    console.print(table)


# ---------------------------------------------------------------------------
# taxminder deadlines
# ---------------------------------------------------------------------------

@app.command()
def deadlines(today: str = typer.Option(None, help="Evaluate as of this date (YYYY-MM-DD)")):
    """Show every client's filing deadlines and status."""
    from taxminder.catalog import filing_type_name
    from taxminder.engine.deadlines import DEADLINE_DESCRIPTIONS, effective_deadline, filing_status
    from taxminder.engine.working_days import utc_today

    as_of = _parse_date(today) or utc_today()
    with db.conn() as c:
        clients = {cl.id: cl for cl in db.list_clients(c)}
        overrides = db.deadline_overrides(c)
        assignments = db.list_assignments(c)

    table = Table(title=f"Filing deadlines as of {as_of}")
    table.add_column("Client")
    table.add_column("Filing")
    table.add_column("Deadline")
    table.add_column("Days", justify="right")
    table.add_column("Status")
    table.add_column("Rule", style="dim")

    for a in assignments:
        client = clients.get(a.client_id)
        if client is None:
            continue
        ft = a.filing_type_id.value
        override = overrides.get((client.id, ft))
        deadline = effective_deadline(ft, client.year_end_date, client.vat_stagger_group,
                                      override.override_date if override else None, as_of)
        st = filing_status(ft, deadline, client.records_received_for, client.completed_for, as_of)
        color = STATUS_COLORS.get(st.value, "white")
        table.add_row(
            client.company_name,
            filing_type_name(ft) + (" *" if override else ""),
            str(deadline) if deadline else "—",
            str((deadline - as_of).days) if deadline else "",
            f"[{color}]{st.value.upper()}[/{color}]",
            "override" if override else DEADLINE_DESCRIPTIONS.get(ft, ""),
        )

    console.print(table)


# ---------------------------------------------------------------------------
# taxminder rebuild / process / due
# ---------------------------------------------------------------------------

@app.command()
def rebuild(
    client_id: str = typer.Option(None, "--client", help="Only this client"),
    today: str = typer.Option(None, help="Build as of this date (YYYY-MM-DD)"),
):
    """Reconcile the reminder queue with current deadlines and templates."""
    from taxminder.engine.queue_builder import build_reminder_queue, rebuild_queue_for_client

    as_of = _parse_date(today)
    with db.conn() as c:
        try:
            if client_id:
                result = rebuild_queue_for_client(c, client_id, as_of)
            else:
                result = build_reminder_queue(c, as_of)
        except TaxminderError as e:
            _fail(e)

    console.print(f"\n[green]Queue rebuilt[/green] ({result.clients} client(s))")
    console.print(f"  Created: {result.created}  Updated: {result.updated}  "
                  f"Retired: {result.retired}  Skipped: {result.skipped}")
    for err in result.errors:
        console.print(f"  [red]{err}[/red]")


@app.command()
def process(today: str = typer.Option(None, help="Run as of this date (YYYY-MM-DD)")):
    """Daily run: rebuild, queue today's reminders, optional auto-rollover."""
    from taxminder.engine.scheduler import process_reminders

    with db.conn() as c:
        result = process_reminders(c, _parse_date(today))

    if result.skipped_wrong_hour:
        console.print("[dim]Outside the configured send hour; nothing done.[/dim]")
        return
    console.print(f"\n[green]Queued:[/green] {result.queued}")
    console.print(f"  Rolled over: {result.rolled_over}")
    console.print(f"  Skipped: {result.skipped}")
    if result.errors:
        console.print(f"\n[red]Errors ({len(result.errors)}):[/red]")
        for err in result.errors:
            console.print(f"  {err}")
        raise typer.Exit(1)


@app.command()
def due():
    """List pending reminders ready for the sender."""
    from taxminder.engine.scheduler import due_for_sending

    with db.conn() as c:
        entries = due_for_sending(c)

    if not entries:
        console.print("[dim]Nothing due.[/dim]")
        return

    table = Table(title="Due for sending")
    table.add_column("ID", style="dim")
    table.add_column("Client")
    table.add_column("Send")
    table.add_column("Subject")
    for e in entries:
        table.add_row(str(e.id), e.client_id, str(e.send_date), e.resolved_subject or "")
    console.print(table)


# ---------------------------------------------------------------------------
# taxminder rollover list / run
# ---------------------------------------------------------------------------

@rollover_app.command("list")
def rollover_list(today: str = typer.Option(None, help="As of this date (YYYY-MM-DD)")):
    """Filings whose records are in and whose deadline has passed."""
    from taxminder.catalog import filing_type_name
    from taxminder.engine.rollover import get_rollover_candidates

    with db.conn() as c:
        candidates = get_rollover_candidates(c, _parse_date(today))

    if not candidates:
        console.print("[dim]No filings ready to roll over.[/dim]")
        return

    table = Table(title="Rollover candidates")
    table.add_column("Client")
    table.add_column("Filing")
    table.add_column("Deadline")
    table.add_column("Days overdue", justify="right")
    table.add_column("Next deadline")
    for x in candidates:
        table.add_row(x.client_name, filing_type_name(x.filing_type_id),
                      str(x.deadline_date), str(x.days_overdue), str(x.next_deadline or "-"))
    console.print(table)


@rollover_app.command("run")
def rollover_run(
    client_id: str = typer.Option(None, "--client", help="Client id (with --filing)"),
    filing_type_id: str = typer.Option(None, "--filing", help="Filing type id"),
    today: str = typer.Option(None, help="As of this date (YYYY-MM-DD)"),
):
    """Roll over one filing, or every current candidate."""
    from taxminder.engine.rollover import bulk_rollover, get_rollover_candidates

    as_of = _parse_date(today)
    with db.conn() as c:
        if client_id and filing_type_id:
            items = [(client_id, filing_type_id)]
        elif client_id or filing_type_id:
            _fail(TaxminderError("--client and --filing must be given together."))
        else:
            items = get_rollover_candidates(c, as_of)
        result = bulk_rollover(c, items, as_of)

    for r in result.results:
        if r.success:
            change = f" (year end {r.old_year_end} -> {r.new_year_end})" if r.new_year_end else ""
            console.print(f"  [green]OK[/green] {r.client_id}/{r.filing_type_id}{change}")
            if r.queue_error:
                console.print(f"    [yellow]Queue rebuild failed: {r.queue_error}[/yellow]")
        else:
            console.print(f"  [red]FAILED[/red] {r.client_id}/{r.filing_type_id}: {r.error}")
    console.print(f"\n{result.success_count} rolled over, {result.error_count} failed")


# ---------------------------------------------------------------------------
# taxminder records received / unreceived
# ---------------------------------------------------------------------------

@records_app.command("received")
def records_received(client_id: str = typer.Argument(...), filing_type_id: str = typer.Argument(...)):
    """Stop reminders for a filing whose records have arrived."""
    from taxminder.engine.queue_builder import mark_records_received

    with db.conn() as c:
        try:
            moved = mark_records_received(c, client_id, filing_type_id)
        except TaxminderError as e:
            _fail(e)
    console.print(f"[green]Records received.[/green] {moved} reminder(s) stopped.")


@records_app.command("unreceived")
def records_unreceived(client_id: str = typer.Argument(...), filing_type_id: str = typer.Argument(...)):
    """Undo a records-received marker and reschedule reminders."""
    from taxminder.engine.queue_builder import unmark_records_received

    with db.conn() as c:
        try:
            result = unmark_records_received(c, client_id, filing_type_id)
        except TaxminderError as e:
            _fail(e)
    console.print(f"[green]Marker removed.[/green] {result.created} reminder(s) scheduled.")


# ---------------------------------------------------------------------------
# taxminder holidays / detect
# ---------------------------------------------------------------------------

@app.command()
def holidays():
    """Show upcoming UK bank holidays."""
    from taxminder.engine.working_days import utc_today
    from taxminder.integrations.bank_holidays import load_holidays

    today = utc_today().isoformat()
    with db.conn() as c:
        dates = load_holidays(c, get_settings())
    upcoming = sorted(d for d in dates if d >= today)
    for d in upcoming[:12]:
        console.print(f"  {date.fromisoformat(d):%a %d %b %Y}")


@app.command()
def detect(
    subject: str = typer.Argument(..., help="Email subject"),
    body: str = typer.Argument("", help="Email body"),
    attachments: bool = typer.Option(False, "--attachments", help="Email has attachments"),
):
    """Score an email for document-sending intent."""
    from taxminder.engine.keywords import detect_document_keywords, detect_filing_type

    result = detect_document_keywords(subject, body, attachments)
    color = "green" if result.documents_detected else "yellow"
    console.print(f"\nScore: [{color}]{result.score:.1f}[/{color}]"
                  f" ({'documents detected' if result.documents_detected else 'no documents'})")
    console.print(f"  Filing type: {detect_filing_type(subject, body) or 'unknown'}")
    if result.matched_keywords:
        console.print(f"  Matched: {', '.join(result.matched_keywords)}")


if __name__ == "__main__":
    app()
