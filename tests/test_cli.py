"""
Tests for the command-line interface against the in-memory store.
"""

import json

import pytest

from wpautopilot.cli import _format_table, build_parser, main


def _run(capsys, owner, *argv):
    code = main(["--owner", owner, *argv])
    out, err = capsys.readouterr()
    return code, out, err


class TestFormatTable:

    @pytest.mark.unit
    def test_empty(self):
        assert _format_table(["A"], []) == "(no results)"

    @pytest.mark.unit
    def test_truncates_long_values(self):
        table = _format_table(["Name"], [["x" * 50]], max_col_width=10)
        assert "xxxxxxx..." in table


class TestCommands:

    @pytest.mark.unit
    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "wpautopilot" in capsys.readouterr().out

    @pytest.mark.unit
    def test_add_site_and_feed(self, capsys, store, owner):
        code, out, _ = _run(
            capsys, owner, "add-site", "--name", "Blog", "--url", "https://blog.example.com",
            "--username", "editor", "--password", "abcd efgh",
        )
        assert code == 0
        assert out.startswith("Site added:")
        assert len(store.list_sites(owner)) == 1

        code, out, _ = _run(capsys, owner, "add-feed", "--url", "https://news.example.com/feed")
        assert code == 0
        assert store.list_feeds(owner)[0].name == "https://news.example.com/feed"

    @pytest.mark.unit
    def test_create_and_list_json(self, capsys, store, owner, site, feed):
        code, out, _ = _run(
            capsys, owner, "create", "--site-id", site.id, "--name", "Morning news",
            "--type", "RECURRING", "--cron", "30 6 * * 1-5", "--timezone", "Europe/Berlin",
            "--feed-id", feed.id, "--max-articles", "3",
        )
        assert code == 0
        assert "Schedule created:" in out

        code, out, _ = _run(capsys, owner, "list", "--json")
        listed = json.loads(out)
        assert listed[0]["cron_expression"] == "30 6 * * 1-5"
        assert listed[0]["timezone"] == "Europe/Berlin"
        assert listed[0]["max_articles_per_run"] == 3

    @pytest.mark.unit
    def test_pause_and_stats(self, capsys, owner, make_schedule):
        schedule = make_schedule()
        code, out, _ = _run(capsys, owner, "pause", schedule.id)
        assert code == 0
        assert "Paused: Morning news" in out

        _, out, _ = _run(capsys, owner, "stats")
        stats = json.loads(out)
        assert stats["total_schedules"] == 1
        assert stats["active_schedules"] == 0

    @pytest.mark.unit
    def test_errors_exit_nonzero(self, capsys, store, owner):
        code, _, err = _run(capsys, owner, "pause", "missing-schedule")
        assert code == 1
        assert "not found" in err

    @pytest.mark.unit
    def test_invalid_schedule_reports_error(self, capsys, owner, site):
        code, _, err = _run(
            capsys, owner, "create", "--site-id", site.id, "--name", "Bad", "--type", "CUSTOM",
            "--cron", "61 * * * *", "--topic", "Anything",
        )
        assert code == 1
        assert err.startswith("Error:")

    @pytest.mark.unit
    def test_executions_and_jobs_empty(self, capsys, owner, make_schedule):
        schedule = make_schedule()
        _, out, _ = _run(capsys, owner, "executions", schedule.id)
        assert "(no results)" in out
        _, out, _ = _run(capsys, owner, "jobs", "--status", "failed")
        assert "0 of 0" in out

    @pytest.mark.unit
    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])
        assert args.port == 8780
        assert args.no_scheduler is False
