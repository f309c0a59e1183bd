"""Command-line interface for the Ketchup calendar engine."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import date, datetime, timedelta, tzinfo

from ketchup_calendar.config import get_settings
from ketchup_calendar.coordinator import CalendarCoordinator
from ketchup_calendar.database.connection import close_db
from ketchup_calendar.engine import build_coordinator
from ketchup_calendar.errors import CalendarError
from ketchup_calendar.models.event import BackendType, CalendarEvent


class ConsolePresenter:
    """Shows the consent URL and reads the code pasted back by the user."""

    async def present(self, authorization_url: str) -> str | None:
        print("Open this URL in a browser and approve calendar access:")
        print(f"  {authorization_url}")
        code = await asyncio.to_thread(input, "Paste the authorization code: ")
        return code.strip() or None


def _print_event(event: CalendarEvent, tz: tzinfo) -> None:
    when = "all day" if event.all_day else (
        f"{event.start.astimezone(tz):%H:%M}-{event.end.astimezone(tz):%H:%M}"
    )
    marker = " *" if event.is_app_event else ""
    line = f"{when:>11}  [{event.source.value}] {event.title}{marker}"
    if event.location:
        line += f" @ {event.location}"
    print(line)


async def _events(coordinator: CalendarCoordinator, args: argparse.Namespace) -> int:
    result = await coordinator.get_day(args.date or coordinator.clock().astimezone(coordinator.tz))
    print(f"Events for {result.day.isoformat()}:")
    if not result.events:
        print("  (none)")
    for event in result.events:
        _print_event(event, coordinator.tz)
    for error in result.errors:
        print(f"warning: {error}", file=sys.stderr)
    return 0


async def _calendars(coordinator: CalendarCoordinator, args: argparse.Namespace) -> int:
    state = coordinator.state
    print(f"On-device access: {'yes' if state.is_authorized else 'no'}")
    google = state.google_user_email or ("yes" if state.is_google_authorized else "no")
    print(f"Google: {google}")
    selected = state.selected_backend.value if state.selected_backend else "automatic"
    print(f"Default backend: {selected}")
    for calendar in state.connected_calendars:
        flags = []
        if calendar.is_primary:
            flags.append("primary")
        if not calendar.is_enabled:
            flags.append("hidden")
        suffix = f" ({', '.join(flags)})" if flags else ""
        print(f"  [{calendar.backend.value}] {calendar.name}{suffix}")
    return 0


async def _create(coordinator: CalendarCoordinator, args: argparse.Namespace) -> int:
    start = args.start
    if start.tzinfo is None:
        start = start.replace(tzinfo=coordinator.tz)
    result = await coordinator.create_hangout_event(
        activity=args.activity,
        location=args.location,
        start=start,
        duration=timedelta(minutes=args.duration),
        email_recipients=args.invite,
    )
    print(f"Created event {result.event_id} on {', '.join(b.value for b in result.backends)}")
    if result.html_link:
        print(f"  {result.html_link}")
    if result.mirror_error:
        print(f"warning: mirror write failed: {result.mirror_error}", file=sys.stderr)
    return 0


async def _local_access(coordinator: CalendarCoordinator, args: argparse.Namespace) -> int:
    granted = await coordinator.request_local_access()
    print("On-device calendar access granted" if granted else "On-device calendar access denied")
    return 0 if granted else 1


async def _login_google(coordinator: CalendarCoordinator, args: argparse.Namespace) -> int:
    if coordinator.remote is None:
        print("Google OAuth is not configured (set GOOGLE_CLIENT_ID/SECRET)", file=sys.stderr)
        return 1
    user = await coordinator.request_google_access(ConsolePresenter())
    print(f"Signed in to Google as {user.email or 'unknown account'}")
    return 0


async def _logout(coordinator: CalendarCoordinator, args: argparse.Namespace) -> int:
    await coordinator.sign_out(BackendType(args.backend))
    print(f"Signed out of {args.backend} calendar")
    return 0


async def _watch(coordinator: CalendarCoordinator, args: argparse.Namespace) -> int:
    if not coordinator.state.is_monitoring:
        print("Remote change monitoring is not running (sign in to Google first)", file=sys.stderr)
        return 1

    def on_state(state) -> None:
        print(f"Calendar changed (version {state.events_version})")

    unsubscribe = coordinator.subscribe(on_state)
    print("Watching for calendar changes, Ctrl-C to stop")
    try:
        await asyncio.Event().wait()
    finally:
        unsubscribe()
    return 0


COMMANDS = {
    "events": _events,
    "calendars": _calendars,
    "create": _create,
    "local-access": _local_access,
    "login-google": _login_google,
    "logout": _logout,
    "watch": _watch,
}


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    coordinator = await build_coordinator(settings)
    try:
        await coordinator.ensure_initialized()
        return await COMMANDS[args.command](coordinator, args)
    except CalendarError as e:
        print(f"error: {e.message}", file=sys.stderr)
        return 1
    finally:
        await coordinator.close()
        await close_db()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ketchup Calendar - Read and schedule hangouts across device and Google calendars"
    )
    parser.add_argument(
        "--version",
        action="version",
        version="%(prog)s 0.1.0",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Events command
    events_parser = subparsers.add_parser("events", help="List merged events for a day")
    events_parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=None,
        help="Day as YYYY-MM-DD (default: today)",
    )

    subparsers.add_parser("calendars", help="Show authorization status and calendars")

    # Create command
    create_parser = subparsers.add_parser("create", help="Create a hangout event")
    create_parser.add_argument("activity", help="What the hangout is")
    create_parser.add_argument(
        "--start",
        type=datetime.fromisoformat,
        required=True,
        help="Start time, ISO 8601 (local zone if no offset)",
    )
    create_parser.add_argument(
        "--duration",
        type=int,
        default=60,
        help="Duration in minutes",
    )
    create_parser.add_argument("--location", default=None, help="Where to meet")
    create_parser.add_argument(
        "--invite",
        nargs="*",
        default=[],
        metavar="EMAIL",
        help="Attendee email addresses",
    )

    subparsers.add_parser("local-access", help="Request on-device calendar access")
    subparsers.add_parser("login-google", help="Sign in to Google Calendar")

    logout_parser = subparsers.add_parser("logout", help="Sign out of one backend")
    logout_parser.add_argument(
        "backend",
        choices=[b.value for b in BackendType],
        help="Backend to sign out of",
    )

    subparsers.add_parser("watch", help="Print a line whenever calendar data changes")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    try:
        return asyncio.run(_run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
