from __future__ import annotations

import asyncio
import json
import stat
import sys

import pytest  # pyright: ignore[reportMissingImports]

from kimaki.services.opencode_runtime import (  # pyright: ignore[reportMissingImports]
    OpencodeRuntimeOptions,
    OpencodeEventStream,
    OpencodeRuntimeOptions,
    OpencodeRuntimeService,
)
from kimaki.services.thread_queue import WorkItemAborted


class _FakeLogger:
    def __init__(self) -> None:
        self.warnings: list[tuple[tuple[object, ...], dict[str, object]]] = []

    def warning(self, *args, **kwargs) -> None:
        self.warnings.append((args, kwargs))


class _FakeStream:
    def __init__(self, lines: list[bytes], block_at_end: bool = False) -> None:
        self._lines = list(lines)
        self._block_at_end = block_at_end

    async def readline(self) -> bytes:
        if self._lines:
            return self._lines.pop(0) + b"\n"
        if self._block_at_end:
            await asyncio.Event().wait()
        return b""

    async def read(self) -> bytes:
        return b"\n".join(self._lines)


class _FakeProcess:
    def __init__(self, returncode: int | None, stdout: list[bytes], stderr: bytes = b"", block: bool = False) -> None:
        self.returncode = None if block else returncode
        self._final = returncode
        self.stdout = _FakeStream(stdout, block_at_end=block)
        self.stderr = _FakeStream([stderr] if stderr else [])
        self.killed = False

    async def wait(self) -> int | None:
        if self.returncode is None and not self.killed:
            self.returncode = self._final
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9


def _event(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


SUCCESS_STDOUT = [
    b"opencode v1 starting",
    _event({"type": "step_start", "sessionID": "ses_1"}),
    _event({"type": "text", "sessionID": "ses_1", "part": {"id": "p1", "type": "text", "text": "Hel"}}),
    _event({"type": "text", "sessionID": "ses_1", "part": {"id": "p1", "type": "text", "text": "Hello"}}),
    _event({"type": "step_finish", "sessionID": "ses_1"}),
    _event({"type": "text", "sessionID": "ses_1", "part": {"id": "p2", "type": "text", "text": "done"}}),
    _event({"type": "step_finish", "sessionID": "ses_1"}),
]


def _service(logger=None, **options) -> OpencodeRuntimeService:
    defaults = {"binary": "opencode", "timeout_ms": 2000, "retry_count": 0, "retry_backoff_ms": 0}
    defaults.update(options)
    return OpencodeRuntimeService(logger=logger or _FakeLogger(), options=OpencodeRuntimeOptions(**defaults))


def test_event_stream_keeps_latest_text_per_part() -> None:
    stream = OpencodeEventStream()
    for line in SUCCESS_STDOUT:
        stream.feed(line.decode("utf-8"))
    result = stream.result()

    assert result.session_id == "ses_1"
    assert result.text == "Hello\n\ndone"
    assert result.steps == 2
    assert len(result.events) == 6


async def test_run_turn_streams_events_and_checkpoints_each_step(monkeypatch) -> None:
    calls: list[tuple[tuple[object, ...], dict[str, object]]] = []

    async def _fake_create_subprocess_exec(*args, **kwargs):
        calls.append((args, kwargs))
        return _FakeProcess(returncode=0, stdout=SUCCESS_STDOUT)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_create_subprocess_exec)
    checkpoints = 0

    async def _checkpoint() -> None:
        nonlocal checkpoints
        checkpoints += 1

    service = _service(model="anthropic/claude")
    result = await service.run_turn("/work", "fix the bug", session_id="ses_0", on_step_finish=_checkpoint)

    assert result.text == "Hello\n\ndone"
    assert result.session_id == "ses_1"
    assert checkpoints == 2
    args, kwargs = calls[0]
    assert args == (
        "opencode",
        "run",
        "--format",
        "json",
        "--session",
        "ses_0",
        "--model",
        "anthropic/claude",
        "fix the bug",
    )
    assert kwargs["cwd"] == "/work"


async def test_run_turn_retries_transient_failure_before_output(monkeypatch) -> None:
    attempts = 0

    async def _fake_create_subprocess_exec(*_args, **_kwargs):
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            return _FakeProcess(returncode=1, stdout=[], stderr=b"temporary issue")
        return _FakeProcess(returncode=0, stdout=SUCCESS_STDOUT)

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_create_subprocess_exec)
    logger = _FakeLogger()

    result = await _service(logger=logger, retry_count=1).run_turn("/work", "hello")

    assert attempts == 2
    assert result.text == "Hello\n\ndone"
    retry_logs = [w for w in logger.warnings if w[0] and w[0][0] == "opencode transient failure. Retrying."]
    assert len(retry_logs) == 1
    assert retry_logs[0][1]["reason"] == "opencode exited with retryable code 1"
    assert retry_logs[0][1]["stderr_summary"] == "temporary issue"


async def test_run_turn_does_not_retry_usage_errors(monkeypatch) -> None:
    attempts = 0

    async def _fake_create_subprocess_exec(*_args, **_kwargs):
        nonlocal attempts
        attempts += 1
        return _FakeProcess(returncode=2, stdout=[], stderr=b"unknown option --format")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_create_subprocess_exec)

    with pytest.raises(RuntimeError, match="non-retryable"):
        await _service(retry_count=3).run_turn("/work", "hello")
    assert attempts == 1


async def test_run_turn_does_not_replay_a_turn_that_produced_output(monkeypatch) -> None:
    attempts = 0

    async def _fake_create_subprocess_exec(*_args, **_kwargs):
        nonlocal attempts
        attempts += 1
        return _FakeProcess(returncode=1, stdout=SUCCESS_STDOUT[:3], stderr=b"crashed")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_create_subprocess_exec)

    with pytest.raises(RuntimeError, match="non-retryable"):
        await _service(retry_count=3).run_turn("/work", "hello")
    assert attempts == 1


async def test_aborting_at_a_step_boundary_kills_the_process(monkeypatch) -> None:
    process = _FakeProcess(returncode=0, stdout=SUCCESS_STDOUT[:5], block=True)

    async def _fake_create_subprocess_exec(*_args, **_kwargs):
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_create_subprocess_exec)

    async def _checkpoint() -> None:
        raise WorkItemAborted("next-step")

    with pytest.raises(WorkItemAborted):
        await _service(retry_count=3).run_turn("/work", "hello", on_step_finish=_checkpoint)
    assert process.killed


async def test_cancelling_a_turn_kills_the_process(monkeypatch) -> None:
    process = _FakeProcess(returncode=0, stdout=SUCCESS_STDOUT[:2], block=True)

    async def _fake_create_subprocess_exec(*_args, **_kwargs):
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_create_subprocess_exec)

    task = asyncio.create_task(_service().run_turn("/work", "hello"))
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert process.killed


class _GatedStdout:
    def __init__(self, inner: _FakeStream, gate: asyncio.Event) -> None:
        self._inner = inner
        self._gate = gate

    async def readline(self) -> bytes:
        await self._gate.wait()
        return await self._inner.readline()


class _DrainSignallingStderr:
    def __init__(self, payload: bytes, drained: asyncio.Event) -> None:
        self._payload = payload
        self._drained = drained

    async def read(self) -> bytes:
        self._drained.set()
        return self._payload


class _StderrFirstProcess(_FakeProcess):
    """stdout stays silent until stderr has been read, like a child blocked on a full pipe."""

    def __init__(self, stderr_size: int) -> None:
        super().__init__(returncode=0, stdout=SUCCESS_STDOUT)
        drained = asyncio.Event()
        self.stdout = _GatedStdout(self.stdout, drained)
        self.stderr = _DrainSignallingStderr(b"x" * stderr_size, drained)


async def test_stderr_is_read_while_stdout_is_still_open(monkeypatch) -> None:
    process = _StderrFirstProcess(stderr_size=300_000)

    async def _fake_create_subprocess_exec(*_args, **_kwargs):
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", _fake_create_subprocess_exec)
    logger = _FakeLogger()

    result = await asyncio.wait_for(_service(logger=logger, timeout_ms=1000).run_turn("/work", "hello"), timeout=5)

    assert result.text == "Hello\n\ndone"
    stderr_logs = [w for w in logger.warnings if w[0] and w[0][0] == "opencode wrote to stderr."]
    assert len(stderr_logs) == 1
    assert len(stderr_logs[0][1]["stderr"]) == 2000


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
async def test_child_flooding_stderr_does_not_hang_the_turn(tmp_path) -> None:
    script = tmp_path / "opencode"
    script.write_text(
        "#!/bin/sh\n"
        "head -c 300000 /dev/zero | tr '\\0' x >&2\n"
        'echo \'{"type":"text","sessionID":"ses_2","part":{"id":"p1","type":"text","text":"survived"}}\'\n'
    )
    script.chmod(script.stat().st_mode | stat.S_IXUSR)

    service = _service(binary=str(script), timeout_ms=3000)
    result = await asyncio.wait_for(service.run_turn(str(tmp_path), "hello"), timeout=10)

    assert result.text == "survived"
    assert result.session_id == "ses_2"
