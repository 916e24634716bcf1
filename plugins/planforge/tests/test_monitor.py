"""
Tests for the live session monitor.

Process discovery is fed fake psutil entries; transcripts and run
directories are real files under tmp_path.
"""
import io
import os
from types import SimpleNamespace
from unittest.mock import patch

import psutil
import pytest
from rich.console import Console

from config import MonitorSettings, Variant
from conftest import assistant_record, tool_use, user_record, write_jsonl
from monitor import (
    EXIT_NO_SESSIONS,
    EXIT_OK,
    Monitor,
    RunningSession,
    classify_activity,
    find_latest_run_dir,
    find_running_sessions,
    format_context,
    format_cpu,
    load_size_snapshot,
    main,
    render_artifacts,
    render_sessions,
    run_plan_threshold,
)
from telemetry import TelemetrySnapshot, TranscriptFile, TranscriptStatus, VariantMatcher


@pytest.fixture
def matcher():
    return VariantMatcher.for_variants([
        Variant("baseline"),
        Variant("simplicity", guidance="Prioritize simplicity", marker="Prioritize simplicity"),
    ])


def fake_proc(pid, cmdline, user=1.0, system=0.5):
    return SimpleNamespace(info={
        "pid": pid,
        "cmdline": cmdline,
        "cpu_times": SimpleNamespace(user=user, system=system),
    })


class VanishedProc:
    @property
    def info(self):
        raise psutil.NoSuchProcess(999)


def text_of(console):
    return console.file.getvalue()


def make_console():
    return Console(file=io.StringIO(), width=250, color_system=None)


class TestFindRunningSessions:
    """Process table scan"""

    def test_matches_signature_and_attributes_variant(self, matcher):
        procs = [
            fake_proc(10, ["claude", "-p", "Task... Prioritize simplicity ... plan-simplicity.md"]),
            fake_proc(11, ["claude", "-p", "Task... write /run/plan-baseline.md"]),
            fake_proc(12, ["timeout", "3600", "claude", "-p", "plan-baseline.md"]),
            fake_proc(13, ["vim", "notes.md"]),
            fake_proc(14, []),
            VanishedProc(),
        ]
        sessions = find_running_sessions("claude -p", matcher, procs)

        assert [(s.pid, s.variant) for s in sessions] == [(10, "simplicity"), (11, "baseline")]
        assert sessions[0].cpu_seconds == 1.5

    def test_unattributed_session(self, matcher):
        [session] = find_running_sessions("claude -p", matcher, [fake_proc(5, ["claude", "-p", "hi"])])
        assert session.variant == "unknown"


class TestActivity:
    """Transcript growth between refreshes"""

    @pytest.mark.parametrize("size, prev, expected", [
        (1000, None, ("new", 0)),
        (1000, 0, ("new", 0)),
        (1500, 1000, ("growing", 500)),
        (1000, 1000, ("idle", 0)),
        (800, 1000, ("unknown", 0)),
    ])
    def test_classify(self, size, prev, expected):
        assert classify_activity(size, prev) == expected

    def test_snapshot_survives_bad_file(self, tmp_path):
        path = tmp_path / "sizes.json"
        assert load_size_snapshot(path) == {}
        path.write_text("{broken")
        assert load_size_snapshot(path) == {}
        path.write_text('{"baseline": 1200, "junk": "x"}')
        assert load_size_snapshot(path) == {"baseline": 1200}


class TestFormatting:
    """Cell formatting"""

    def test_cpu(self):
        assert format_cpu(75.9) == "1:15"
        assert format_cpu(3725) == "1:02:05"

    def test_context_thresholds(self):
        assert format_context(0, 200_000).plain == "—"
        assert format_context(50_000, 200_000).style == "dim"
        assert format_context(120_000, 200_000).style == "yellow"
        red = format_context(170_000, 200_000)
        assert red.style == "red"
        assert red.plain == "170K 85%"


class TestRenderSessions:
    """Session table"""

    def test_rows_and_remembered_sizes(self, tmp_path):
        status = TranscriptStatus(
            file=TranscriptFile(tmp_path / "abcdef1234567890.jsonl", 4096, 1.0),
            variant="baseline",
            snapshot=TelemetrySnapshot(
                turns=7, tool_calls=12, total_input=1500, total_output=300,
                context_size=42_000, last_action="Read(service.py)",
            ),
        )
        sessions = [
            RunningSession(pid=101, variant="baseline", cpu_seconds=30),
            RunningSession(pid=102, variant="simplicity", cpu_seconds=3),
        ]
        table, new_sizes = render_sessions(sessions, {"baseline": status}, {"baseline": 2048}, 200_000)

        console = make_console()
        console.print(table)
        out = text_of(console)

        assert new_sizes == {"baseline": 4096}
        assert table.row_count == 2
        assert "abcdef12" in out
        assert "Read(service.py)" in out
        assert "+2.0KB" in out
        assert "waiting for transcript" in out


class TestArtifacts:
    """Output file status lines"""

    def test_glyphs(self, tmp_path):
        (tmp_path / "plan-a.md").write_text("")
        (tmp_path / "plan-b.md").write_text("")
        (tmp_path / "plan-c.md").write_text("x" * 2000)
        (tmp_path / "plan-d.md").write_text("x" * 2000)
        (tmp_path / "plan-e.md").write_text("x" * 6000)

        lines = [t.plain for t in render_artifacts(tmp_path, {"a", "c", "f"}, 5000)]

        assert lines == [
            "plan-a.md: empty (session running — waiting for Write tool)",
            "plan-b.md: empty ✗",
            "plan-c.md: 2.0KB ⏳ still writing...",
            "plan-d.md: 2.0KB ⚠ possibly truncated",
            "plan-e.md: 5.9KB ✓",
            "plan-f.md: not yet created (researching...)",
        ]

    def test_merge_output(self, tmp_path):
        lines = [t.plain for t in render_artifacts(tmp_path, {"merge"})]
        assert lines == ["merged-plan.md: not yet created (researching...)"]

        (tmp_path / "merged-plan.md").write_text("m" * 9000)
        lines = [t.plain for t in render_artifacts(tmp_path, set())]
        assert lines == ["merged-plan.md: 8.8KB ✓"]

    def test_merged_plan_has_its_own_threshold(self, tmp_path):
        (tmp_path / "plan-a.md").write_text("x" * 600)
        (tmp_path / "merged-plan.md").write_text("m" * 3000)

        lines = [t.plain for t in render_artifacts(tmp_path, set(), 500, merged_min_bytes=2000)]

        assert lines == ["plan-a.md: 600B ✓", "merged-plan.md: 2.9KB ✓"]

    def test_threshold_recorded_by_generate(self, tmp_path):
        assert run_plan_threshold(tmp_path, 5000) == 5000
        (tmp_path / "run.json").write_text('{"min_output_bytes": 500, "finished": false}')
        assert run_plan_threshold(tmp_path, 5000) == 500
        (tmp_path / "run.json").write_text('{"min_output_bytes": "lots"}')
        assert run_plan_threshold(tmp_path, 5000) == 5000

    def test_latest_run_dir_skips_symlinks(self, tmp_path):
        task = tmp_path / "svc"
        (task / "20260101-000000").mkdir(parents=True)
        (task / "20260102-000000").mkdir()
        (task / "latest").symlink_to("20260101-000000")
        assert find_latest_run_dir(tmp_path) == task / "20260102-000000"

    def test_latest_run_dir_prefers_recent_task(self, tmp_path):
        old = tmp_path / "old-task" / "20260105-000000"
        new = tmp_path / "new-task" / "20260101-000000"
        old.mkdir(parents=True)
        new.mkdir(parents=True)
        os.utime(tmp_path / "old-task", (1_000_000, 1_000_000))
        assert find_latest_run_dir(tmp_path) == new

    def test_no_runs(self, tmp_path):
        assert find_latest_run_dir(tmp_path / "missing") is None
        assert find_latest_run_dir(tmp_path) is None


@pytest.fixture
def settings(tmp_path):
    return MonitorSettings(
        projects_dir=tmp_path / "projects",
        snapshot_path=tmp_path / "sizes.json",
        min_transcript_bytes=100,
    )


class TestMonitor:
    """One tick and the watch loop"""

    def test_tick_without_sessions(self, settings, matcher, tmp_path):
        console = make_console()
        monitor = Monitor(settings, tmp_path / "plans", matcher, console=console)
        with patch.object(monitor, "find_sessions", return_value=[]):
            assert monitor.tick() == 0
        assert "No running 'claude -p' sessions found." in text_of(console)

    def test_tick_renders_telemetry_and_files(self, settings, matcher, tmp_path):
        proj = settings.projects_dir / "-repo"
        proj.mkdir(parents=True)
        write_jsonl(proj / "sess-0001.jsonl", [
            user_record("Task. Write to /x/plan-baseline.md" + " pad" * 50),
            assistant_record(input_tokens=500, content=[tool_use("Grep", pattern="def main")]),
        ])
        run_dir = tmp_path / "plans" / "svc" / "20260101-000000"
        run_dir.mkdir(parents=True)
        (run_dir / "plan-baseline.md").write_text("x" * 100)

        console = make_console()
        monitor = Monitor(settings, tmp_path / "plans", matcher, ["baseline"], console=console)
        sessions = [RunningSession(pid=42, variant="baseline", cpu_seconds=10)]
        with patch.object(monitor, "find_sessions", return_value=sessions):
            assert monitor.tick() == 1

        out = text_of(console)
        assert "Grep(def main)" in out
        assert "sess-000" in out
        assert "plan-baseline.md: 100B ⏳ still writing..." in out
        assert "1 session(s) running" in out
        assert load_size_snapshot(settings.snapshot_path) == {
            "baseline": (proj / "sess-0001.jsonl").stat().st_size,
        }

    def test_debug_run_plans_judged_by_recorded_threshold(self, settings, matcher, tmp_path):
        run_dir = tmp_path / "plans" / "svc" / "20260101-000000"
        run_dir.mkdir(parents=True)
        (run_dir / "plan-baseline.md").write_text("x" * 700)
        (run_dir / "merged-plan.md").write_text("m" * 6000)
        (run_dir / "run.json").write_text('{"min_output_bytes": 500, "finished": true}')

        console = make_console()
        monitor = Monitor(settings, tmp_path / "plans", matcher, console=console, merged_min_bytes=8000)
        sessions = [RunningSession(pid=42, variant="simplicity", cpu_seconds=1)]
        with patch.object(monitor, "find_sessions", return_value=sessions):
            monitor.tick()

        out = text_of(console)
        assert "plan-baseline.md: 700B ✓" in out
        assert "merged-plan.md: 5.9KB ⚠ possibly truncated" in out

    def test_watch_stops_after_sessions_finish(self, settings, matcher, tmp_path):
        console = make_console()
        monitor = Monitor(settings, tmp_path / "plans", matcher, console=console)
        with patch.object(monitor, "tick", side_effect=[0, 2, 1, 0]) as fake_tick, \
                patch("monitor.time.sleep") as fake_sleep:
            assert monitor.watch(5) == EXIT_OK

        assert fake_tick.call_count == 4
        assert fake_sleep.call_count == 3
        fake_sleep.assert_called_with(5)
        assert "All sessions finished" in text_of(console)


class TestMonitorCli:
    """planforge-monitor entry point"""

    def test_nothing_running(self, tmp_path, write_config):
        config = write_config({"monitor": {"snapshot_path": str(tmp_path / "s.json")}})
        with patch("monitor.find_running_sessions", return_value=[]):
            assert main(["--config", str(config), "--plans-dir", str(tmp_path)]) == EXIT_NO_SESSIONS

    def test_sessions_running(self, tmp_path, write_config):
        config = write_config({"monitor": {
            "snapshot_path": str(tmp_path / "s.json"),
            "projects_dir": str(tmp_path / "projects"),
        }})
        running = [RunningSession(pid=1, variant="baseline", cpu_seconds=0)]
        with patch("monitor.find_running_sessions", return_value=running):
            assert main(["--config", str(config), "--plans-dir", str(tmp_path)]) == EXIT_OK

    def test_watch_uses_configured_interval(self, tmp_path, write_config):
        config = write_config({"monitor": {"interval": 3}})
        with patch("monitor.Monitor.watch", return_value=EXIT_OK) as fake_watch:
            assert main(["--config", str(config), "--watch"]) == EXIT_OK
        fake_watch.assert_called_once_with(3.0)

        with patch("monitor.Monitor.watch", return_value=EXIT_OK) as fake_watch:
            main(["--config", str(config), "--watch", "7"])
        fake_watch.assert_called_once_with(7.0)
