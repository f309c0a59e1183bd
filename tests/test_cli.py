"""Tests for the command-line interface."""

from datetime import date, datetime, timedelta, timezone

import pytest

from ketchup_calendar import cli
from ketchup_calendar.database.local_store import LocalEventRecord
from ketchup_calendar.models.event import BackendType


class TestParser:
    """Tests for argument parsing."""

    def test_events_date(self):
        args = cli.build_parser().parse_args(["events", "--date", "2024-06-15"])
        assert args.date == date(2024, 6, 15)

    def test_create(self):
        args = cli.build_parser().parse_args([
            "create", "Dinner",
            "--start", "2024-06-15T18:00",
            "--duration", "90",
            "--invite", "a@example.com", "b@example.com",
        ])
        assert args.activity == "Dinner"
        assert args.start == datetime(2024, 6, 15, 18)
        assert args.duration == 90
        assert args.invite == ["a@example.com", "b@example.com"]

    def test_logout_choices(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["logout", "outlook"])

    def test_no_command_prints_help(self, capsys):
        assert cli.main([]) == 0
        assert "usage" in capsys.readouterr().out


class TestCommands:
    """Tests for command handlers against a coordinator."""

    @pytest.mark.asyncio
    async def test_events(self, coordinator, local_session, local_store, capsys):
        await local_session.authorize()
        start = datetime(2024, 6, 15, 18, tzinfo=timezone.utc)
        local_store.save_event(LocalEventRecord(
            id=None, calendar_id=None, title="Dinner", location="Luigi's",
            start=start, end=start + timedelta(hours=1),
        ))
        args = cli.build_parser().parse_args(["events", "--date", "2024-06-15"])

        assert await cli._events(coordinator, args) == 0

        out = capsys.readouterr().out
        assert "Events for 2024-06-15" in out
        assert "18:00-19:00  [local] Dinner @ Luigi's" in out

    @pytest.mark.asyncio
    async def test_create_local(self, coordinator, local_session, local_store, capsys):
        await local_session.authorize()
        args = cli.build_parser().parse_args(
            ["create", "Walk", "--start", "2024-06-15T18:00", "--duration", "30"]
        )

        assert await cli._create(coordinator, args) == 0

        assert "on local" in capsys.readouterr().out
        events = local_store.events_between(
            datetime(2024, 6, 15, tzinfo=timezone.utc), datetime(2024, 6, 16, tzinfo=timezone.utc)
        )
        assert [(e.title, e.end - e.start) for e in events] == [("Walk", timedelta(minutes=30))]

    @pytest.mark.asyncio
    async def test_logout(self, coordinator, local_session, capsys):
        await local_session.authorize()
        args = cli.build_parser().parse_args(["logout", "local"])

        assert await cli._logout(coordinator, args) == 0
        assert coordinator.state.is_authorized is False

    @pytest.mark.asyncio
    async def test_calendars(self, coordinator, google_session, capsys):
        await google_session.authorize()
        await coordinator.load_connected_calendars()

        assert await cli._calendars(coordinator, cli.build_parser().parse_args(["calendars"])) == 0

        out = capsys.readouterr().out
        assert "Google: me@example.com" in out
        assert f"[{BackendType.REMOTE.value}] Me (primary)" in out

    @pytest.mark.asyncio
    async def test_watch_requires_monitor(self, coordinator, capsys):
        assert await cli._watch(coordinator, cli.build_parser().parse_args(["watch"])) == 1
