"""Tests for shared utility functions."""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import UTC, datetime, timedelta

import pytest

from clawgate.utils import (
    ProcessResult,
    compute_next_run,
    create_background_task,
    describe_failure,
    generate_id,
    parse_once_timestamp,
    run_command,
    write_json_atomic,
)


class TestGenerateId:
    def test_prefix_and_timestamp(self):
        prefix, ms = generate_id("hc").split("-")
        assert prefix == "hc"
        assert ms.isdigit()

    def test_suffix(self):
        parts = generate_id("task", with_suffix=True).split("-")
        assert parts[0] == "task"
        assert len(parts[2]) == 6


class TestComputeNextRun:
    def test_cron_returns_future_utc(self):
        result = compute_next_run("cron", "*/5 * * * *", "UTC")
        assert result.endswith("+00:00")
        assert result > datetime.now(UTC).isoformat()

    def test_cron_respects_timezone(self):
        result = datetime.fromisoformat(compute_next_run("cron", "0 9 * * *", "Asia/Tokyo"))
        assert result.astimezone(UTC).hour == 0  # 09:00 JST

    def test_invalid_cron(self):
        with pytest.raises(ValueError):
            compute_next_run("cron", "every tuesday", "UTC")

    def test_interval(self):
        before = datetime.now(UTC)
        result = datetime.fromisoformat(compute_next_run("interval", "60000", "UTC"))
        assert timedelta(seconds=59) < result - before < timedelta(seconds=61)

    @pytest.mark.parametrize("value", ["0", "-1000", "soon"])
    def test_invalid_interval(self, value):
        with pytest.raises(ValueError):
            compute_next_run("interval", value, "UTC")

    def test_once_has_no_next_run(self):
        assert compute_next_run("once", "2099-01-01T00:00:00Z", "UTC") is None


class TestParseOnceTimestamp:
    def test_normalizes_to_utc(self):
        assert parse_once_timestamp("2099-01-01T09:00:00+09:00") == "2099-01-01T00:00:00+00:00"

    def test_naive_taken_as_utc(self):
        assert parse_once_timestamp("2099-01-01T00:00:00") == "2099-01-01T00:00:00+00:00"

    def test_past_rejected(self):
        with pytest.raises(ValueError, match="past"):
            parse_once_timestamp("2001-01-01T00:00:00Z")

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_once_timestamp("tomorrow-ish")


class TestWriteJsonAtomic:
    def test_creates_parents_and_leaves_no_tmp(self, tmp_path):
        path = tmp_path / "a" / "b" / "data.json"
        write_json_atomic(path, {"x": 1})

        assert json.loads(path.read_text()) == {"x": 1}
        assert list(path.parent.iterdir()) == [path]


class TestRunCommand:
    async def test_success(self, tmp_path):
        result = await run_command(
            [sys.executable, "-c", "print('hi')"], cwd=tmp_path, timeout_seconds=10
        )
        assert result.ok
        assert result.stdout == "hi"

    async def test_stdin(self, tmp_path):
        result = await run_command(
            [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
            cwd=tmp_path,
            timeout_seconds=10,
            stdin_data=b"abc",
        )
        assert result.stdout == "ABC"

    async def test_nonzero_exit(self, tmp_path):
        result = await run_command(
            [sys.executable, "-c", "import sys; sys.exit(3)"], cwd=tmp_path, timeout_seconds=10
        )
        assert not result.ok
        assert result.returncode == 3

    async def test_timeout(self, tmp_path):
        result = await run_command(
            [sys.executable, "-c", "import time; time.sleep(5)"], cwd=tmp_path, timeout_seconds=0.2
        )
        assert result.timed_out
        assert not result.ok

    async def test_missing_binary(self, tmp_path):
        result = await run_command(["definitely-not-a-binary-xyz"], cwd=tmp_path, timeout_seconds=1)
        assert result.start_error is not None
        assert not result.ok


class TestDescribeFailure:
    def test_start_error(self):
        r = ProcessResult(returncode=None, stdout="", stderr="", start_error="not found")
        assert describe_failure(r, label="docker") == "docker failed to start: not found"

    def test_timeout(self):
        r = ProcessResult(returncode=None, stdout="", stderr="", timed_out=True)
        assert describe_failure(r, label="docker") == "docker timed out"

    def test_prefers_stderr(self):
        r = ProcessResult(returncode=1, stdout="out", stderr="err")
        assert describe_failure(r, label="x") == "err"

    def test_exit_code_fallback(self):
        r = ProcessResult(returncode=2, stdout="", stderr="")
        assert describe_failure(r, label="x") == "x exited with code 2"


class TestCreateBackgroundTask:
    async def test_returns_result(self):
        async def work():
            return 42

        task = create_background_task(work(), name="work")
        assert await task == 42
        assert task.get_name() == "work"

    async def test_exception_logged_not_raised_in_loop(self):
        async def boom():
            raise RuntimeError("fail")

        task = create_background_task(boom())
        await asyncio.sleep(0.01)
        assert task.done()
        assert isinstance(task.exception(), RuntimeError)
