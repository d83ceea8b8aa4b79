"""
Main CLI application using Typer.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Optional

import pendulum
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from sqlalchemy.orm import sessionmaker

from ..adapters.calendar_source import CalendarProvider, CalendarSourceAdapter
from ..adapters.graph_authenticator import GraphAuthenticator
from ..adapters.graph_client import GraphClient
from ..adapters.mock_graph_client import MockGraphClient
from ..config import AppConfig, load_config
from ..domain.exceptions import CallslotError
from ..domain.models import SlotStatus
from ..services.availability import AvailabilityService
from ..services.booking import BookingRequest, BookingTransactionManager
from ..services.quota import QuotaPeriod, QuotaTracker
from ..storage import repository
from ..storage.database import create_db_engine, init_db, make_session_factory, session_scope
from ..storage.models import ParticipantRole

app = typer.Typer(
    name="callslot",
    help="Book calls into a callee's free slots, backed by Microsoft Graph calendars",
    add_completion=False,
)

console = Console()

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to config file. Defaults to ./config.yaml"),
]
MockOption = Annotated[
    bool,
    typer.Option("--mock", help="Use the in-memory mock calendar and skip authentication."),
]

STATUS_STYLES = {
    SlotStatus.AVAILABLE: "green",
    SlotStatus.BUSY_EXTERNAL: "yellow",
    SlotStatus.BUSY_BOOKED: "red",
    SlotStatus.PAST: "dim",
}


@dataclass
class Runtime:
    config: AppConfig
    session_factory: sessionmaker
    provider: CalendarProvider
    availability: AvailabilityService
    quota: QuotaTracker
    booking: BookingTransactionManager


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _load(config_file: Optional[Path]) -> AppConfig:
    try:
        config = load_config(config_file)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    _setup_logging(config.log_level)
    return config


def _session_factory(config: AppConfig) -> sessionmaker:
    engine = create_db_engine(
        config.database_url,
        echo=config.database_echo,
        slow_query_threshold=config.slow_query_threshold_seconds,
    )
    return make_session_factory(engine)


def _authenticator(config: AppConfig) -> GraphAuthenticator:
    if not config.calendar.client_id:
        console.print(
            "[bold red]Error:[/bold red] calendar.client_id is not configured. "
            "Set it in config.yaml or use --mock."
        )
        raise typer.Exit(1)

    return GraphAuthenticator(
        client_id=config.calendar.client_id,
        tenant_id=config.calendar.tenant_id,
        authority_url=config.calendar.get_authority_url(),
    )


def _build(config: AppConfig, mock: bool) -> Runtime:
    session_factory = _session_factory(config)

    if mock:
        console.print("[yellow]⚠  MOCK MODE: using mock calendar data[/yellow]\n")
        provider = MockGraphClient(config.calendar.mock_data_file)
    else:
        provider = GraphClient(
            _authenticator(config),
            timeout=config.calendar.request_timeout_seconds,
        )

    calendar_source = CalendarSourceAdapter(
        provider,
        retry_attempts=config.calendar.retry_attempts,
        base_delay=config.calendar.retry_base_delay_seconds,
        max_delay=config.calendar.retry_max_delay_seconds,
    )
    availability = AvailabilityService(
        session_factory,
        calendar_source,
        config.business_hours,
        cache_ttl_seconds=config.availability_cache_ttl_seconds,
    )
    quota = QuotaTracker(session_factory, config.quota)
    booking = BookingTransactionManager(
        session_factory,
        availability,
        quota,
        provider,
        require_connected_calendar=config.calendar.require_connected_calendar,
        confirm_timeout=config.calendar.confirm_timeout_seconds,
    )
    return Runtime(config, session_factory, provider, availability, quota, booking)


def _fail(error: Exception) -> None:
    console.print(f"[bold red]Error:[/bold red] {error}")
    raise typer.Exit(1)


@app.command("init-db")
def init_db_command(config_file: ConfigOption = None):
    """
    Create the database tables.
    """
    config = _load(config_file)
    engine = create_db_engine(config.database_url, echo=config.database_echo)
    init_db(engine)
    console.print(f"[green]✓ Database ready:[/green] {config.database_url}")


@app.command()
def add_participant(
    email: Annotated[str, typer.Argument(help="E-mail address")],
    role: Annotated[ParticipantRole, typer.Option("--role", "-r", help="caller or callee")],
    name: Annotated[str, typer.Option("--name", "-n", help="Display name")] = "",
    timezone: Annotated[Optional[str], typer.Option("--timezone", "-t", help="IANA time zone")] = None,
    plan: Annotated[Optional[str], typer.Option("--plan", "-p", help="Quota plan")] = None,
    config_file: ConfigOption = None,
):
    """
    Register a caller or callee.
    """
    config = _load(config_file)
    tz = timezone or config.timezone

    try:
        pendulum.timezone(tz)
    except Exception:
        _fail(ValueError(f"Unknown time zone: {tz}"))

    session_factory = _session_factory(config)
    with session_scope(session_factory) as session:
        if repository.get_participant_by_email(session, email) is not None:
            _fail(ValueError(f"Participant with e-mail {email} already exists"))
        participant = repository.add_participant(
            session,
            email=email,
            role=role,
            display_name=name,
            timezone=tz,
            plan=plan,
        )

    console.print(
        f"[green]✓ Added {participant.role.value}[/green] "
        f"[bold]{participant.id}[/bold] ({participant.email}, {participant.timezone})"
    )


@app.command()
def availability(
    callee_id: Annotated[str, typer.Argument(help="Callee id")],
    date: Annotated[Optional[str], typer.Option("--date", "-d", help="Date (YYYY-MM-DD), defaults to today")] = None,
    only_free: Annotated[bool, typer.Option("--free", help="Show bookable slots only")] = False,
    config_file: ConfigOption = None,
    mock: MockOption = False,
):
    """
    Show the slots of a callee for one day.

    Examples:

        callslot availability <callee-id> --date 2026-03-02

        callslot availability <callee-id> --free --mock
    """
    config = _load(config_file)
    runtime = _build(config, mock)

    try:
        callee = runtime.availability.load_callee(callee_id)
        tz = callee.timezone
        if date:
            day = pendulum.from_format(date, "YYYY-MM-DD", tz=tz).date()
        else:
            day = pendulum.now(tz).date()

        view = runtime.availability.get_availability(callee_id, day)
    except CallslotError as e:
        _fail(e)
    except ValueError as e:
        _fail(ValueError(f"Could not parse date: {e}"))
    finally:
        runtime.booking.close()

    if not view.is_complete:
        console.print(
            "[yellow]⚠ The callee's calendar could not be read. "
            "Availability is unknown, no slot can be booked right now.[/yellow]\n"
        )

    slots = view.bookable_slots() if only_free else view.slots
    if not slots:
        console.print(f"[yellow]No slots for {callee_id} on {day.isoformat()}.[/yellow]")
        return

    table = Table(
        title=f"{callee.display_name or callee.email} · {day.isoformat()} ({tz})",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Start", style="bold")
    table.add_column("End")
    table.add_column("Status")

    for slot in slots:
        style = STATUS_STYLES[slot.status]
        table.add_row(
            slot.start.in_timezone(tz).format("HH:mm"),
            slot.end.in_timezone(tz).format("HH:mm"),
            f"[{style}]{slot.status.value}[/{style}]",
        )

    console.print()
    console.print(table)
    console.print(f"\n{len(view.bookable_slots())} bookable slot(s)\n")


@app.command()
def book(
    caller_id: Annotated[str, typer.Argument(help="Caller id")],
    callee_id: Annotated[str, typer.Argument(help="Callee id")],
    start: Annotated[str, typer.Argument(help="Slot start, e.g. '2026-03-02 14:00' in the callee's time zone")],
    agenda: Annotated[str, typer.Option("--agenda", "-a", help="What the call is about")] = "",
    notes: Annotated[str, typer.Option("--notes", help="Private notes")] = "",
    key: Annotated[Optional[str], typer.Option("--key", "-k", help="Idempotency key for safe retries")] = None,
    config_file: ConfigOption = None,
    mock: MockOption = False,
):
    """
    Book a call in one of the callee's slots.
    """
    config = _load(config_file)
    runtime = _build(config, mock)

    try:
        callee = runtime.availability.load_callee(callee_id)
        hours = runtime.availability.business_hours_for(callee)
        try:
            slot_start = pendulum.parse(start, tz=callee.timezone)
        except ValueError as e:
            raise typer.BadParameter(f"Could not parse start time: {e}")
        if not isinstance(slot_start, pendulum.DateTime):
            raise typer.BadParameter(f"Start must include a time of day: {start}")

        result = runtime.booking.book(
            BookingRequest(
                caller_id=caller_id,
                callee_id=callee_id,
                start=slot_start,
                end=slot_start.add(minutes=hours.slot_duration_minutes),
                agenda=agenda,
                notes=notes,
                idempotency_key=key,
            )
        )
    except CallslotError as e:
        _fail(e)
    finally:
        runtime.booking.close()

    if result.rejection is not None:
        console.print(
            f"[bold yellow]✗ Not booked ({result.rejection.reason.value}):[/bold yellow] "
            f"{result.rejection.message}"
        )
        raise typer.Exit(2)

    call = result.scheduled_call
    lines = [
        f"[bold]Call:[/bold] {call.id}",
        f"[bold]When:[/bold] {call.start_at.in_timezone(callee.timezone).format('DD.MM.YYYY HH:mm')} "
        f"({callee.timezone})",
        f"[bold]Confirmation code:[/bold] {call.confirmation_code}",
    ]
    if call.calendar_sync_pending:
        lines.append("[yellow]Calendar event pending, run 'callslot sync-pending' later[/yellow]")
    title = "✓ Already booked" if result.replayed else "✓ Booked"
    console.print(Panel.fit("\n".join(lines), title=title))


@app.command()
def cancel(
    call_id: Annotated[str, typer.Argument(help="Scheduled call id")],
    config_file: ConfigOption = None,
    mock: MockOption = False,
):
    """
    Cancel a scheduled call and free its slot.
    """
    config = _load(config_file)
    runtime = _build(config, mock)

    try:
        call = runtime.booking.cancel(call_id)
    except CallslotError as e:
        _fail(e)
    finally:
        runtime.booking.close()

    console.print(f"[green]✓ Cancelled call {call.id}[/green]")


@app.command()
def quota(
    subject_id: Annotated[str, typer.Argument(help="Caller or callee id")],
    config_file: ConfigOption = None,
):
    """
    Show the remaining calls of a participant for the current month.
    """
    config = _load(config_file)
    tracker = QuotaTracker(_session_factory(config), config.quota)
    period = QuotaPeriod.containing(pendulum.now("UTC"))

    try:
        remaining = tracker.remaining(subject_id, period)
    except CallslotError as e:
        _fail(e)

    style = "green" if remaining else "red"
    console.print(
        f"{subject_id}: [{style}]{remaining}[/{style}] call(s) left in {period.label}, "
        f"resets {period.end.format('DD.MM.YYYY')}"
    )


@app.command()
def sync_pending(
    limit: Annotated[int, typer.Option("--limit", "-l", help="Maximum calls to retry")] = 50,
    config_file: ConfigOption = None,
    mock: MockOption = False,
):
    """
    Retry calendar events for calls whose confirmation could not be written.
    """
    config = _load(config_file)
    runtime = _build(config, mock)

    try:
        synced = runtime.booking.retry_pending_calendar_syncs(limit)
    except CallslotError as e:
        _fail(e)
    finally:
        runtime.booking.close()

    console.print(f"[green]✓ {synced} call(s) synced[/green]")


@app.command()
def connect_calendar(
    callee_id: Annotated[str, typer.Argument(help="Callee id")],
    config_file: ConfigOption = None,
):
    """
    Connect a callee's Microsoft 365 calendar (device code flow).
    """
    config = _load(config_file)
    authenticator = _authenticator(config)

    def show_code(flow: dict) -> None:
        console.print(Panel.fit(
            f"[bold yellow]{flow.get('message', '')}[/bold yellow]",
            title="🔐 Sign-in required",
        ))

    try:
        authenticator.connect(callee_id, show_code)
    except CallslotError as e:
        _fail(e)

    console.print(
        f"\n[green]✓ Calendar connected for {callee_id}[/green] "
        f"(stored in {authenticator.cache_backend})\n"
    )


@app.command()
def disconnect_calendar(
    callee_id: Annotated[str, typer.Argument(help="Callee id")],
    config_file: ConfigOption = None,
):
    """
    Remove a callee's stored calendar credential.
    """
    config = _load(config_file)
    _authenticator(config).disconnect(callee_id)
    console.print(f"[green]✓ Calendar disconnected for {callee_id}[/green]")


@app.command()
def version():
    """
    Show version information.
    """
    from .. import __version__
    console.print(f"\n[bold cyan]callslot[/bold cyan] version [bold]{__version__}[/bold]\n")


if __name__ == "__main__":
    app()
