from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class OpencodeRuntimeOptions:
    binary: str
    timeout_ms: int
    model: str | None = None
    retry_count: int = 0
    retry_backoff_ms: int = 250


@dataclass(slots=True)
class _RetryAttempt:
    attempt: int
    reason: str
    stderr_summary: str


class _RetryableOpencodeError(RuntimeError):
    def __init__(self, reason: str, stderr_summary: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.stderr_summary = stderr_summary


class _NonRetryableOpencodeError(RuntimeError):
    pass


@dataclass(slots=True)
class OpencodeTurnResult:
    text: str
    session_id: str | None
    steps: int = 0
    events: list[dict[str, Any]] = field(default_factory=list)


StepCallback = Callable[[], Awaitable[None]]


class OpencodeRuntimeService:
    """Runs one prompt through `opencode run --format json` and streams its events.

    `on_step_finish` is awaited after every step_finish event; raising from it
    stops the turn and kills the process.
    """

    def __init__(self, logger: Any, options: OpencodeRuntimeOptions):
        self.logger = logger
        self.options = options

    async def run_turn(
        self,
        directory: str,
        prompt: str,
        session_id: str | None = None,
        on_step_finish: StepCallback | None = None,
    ) -> OpencodeTurnResult:
        return await self._run_with_retries(
            operation=lambda: self._run_once(
                directory=directory,
                prompt=prompt,
                session_id=session_id,
                on_step_finish=on_step_finish,
            ),
            operation_name="opencode run",
        )

    async def _run_once(
        self,
        directory: str,
        prompt: str,
        session_id: str | None,
        on_step_finish: StepCallback | None,
    ) -> OpencodeTurnResult:
        args = self._build_args(prompt=prompt, session_id=session_id)
        proc = await asyncio.create_subprocess_exec(
            self.options.binary,
            *args,
            cwd=directory or None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=os.environ.copy(),
        )

        stream = OpencodeEventStream(session_id=session_id)
        # stderr is drained concurrently: a child blocked on a full stderr pipe
        # never closes stdout, and the process cannot be reaped while a pipe is open.
        stderr_task = asyncio.create_task(_read_all(proc.stderr))

        async def _read_stdout() -> None:
            assert proc.stdout is not None
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                event = stream.feed(line.decode("utf-8", errors="ignore"))
                if event is not None and event.get("type") == "step_finish" and on_step_finish is not None:
                    await on_step_finish()

        try:
            await asyncio.wait_for(_read_stdout(), timeout=self.options.timeout_ms / 1000)
            stderr = await asyncio.wait_for(stderr_task, timeout=1)
            await asyncio.wait_for(proc.wait(), timeout=1)
        except asyncio.TimeoutError:
            await _kill(proc)
            if stream.events:
                raise _NonRetryableOpencodeError("opencode timed out mid-turn")
            raise _RetryableOpencodeError("opencode execution timed out", stderr_summary="timeout")
        finally:
            # Interrupted turns (checkpoint abort or task cancellation) land here too.
            if proc.returncode is None:
                await _kill(proc)
            if not stderr_task.done():
                stderr_task.cancel()
            await asyncio.gather(stderr_task, return_exceptions=True)

        result = stream.result()
        stderr_text = (stderr or b"").decode("utf-8", errors="ignore").strip()
        if stderr_text:
            self.logger.warning("opencode wrote to stderr.", stderr=stderr_text[:2000])
        if proc.returncode != 0:
            self._raise_for_exit_failure(proc.returncode, stderr_text, streamed=bool(result.events))
        if not result.events:
            raise _RetryableOpencodeError(
                "failed to parse opencode json events",
                stderr_summary=(stderr_text or "no json events")[:300],
            )
        return result

    async def _run_with_retries(
        self, operation: Callable[[], Awaitable[OpencodeTurnResult]], operation_name: str
    ) -> OpencodeTurnResult:
        max_attempts = max(1, self.options.retry_count + 1)
        attempts: list[_RetryAttempt] = []
        for attempt in range(1, max_attempts + 1):
            try:
                return await operation()
            except _NonRetryableOpencodeError as exc:
                raise RuntimeError(f"{operation_name} failed with non-retryable error: {exc}") from exc
            except _RetryableOpencodeError as exc:
                summary = exc.stderr_summary or "unknown"
                attempts.append(_RetryAttempt(attempt=attempt, reason=exc.reason, stderr_summary=summary))
                if attempt >= max_attempts:
                    last = attempts[-1]
                    raise RuntimeError(
                        f"{operation_name} failed after {len(attempts)} attempt(s); "
                        f"last_reason={last.reason}; last_stderr={last.stderr_summary}"
                    ) from exc
                backoff_sec = (self.options.retry_backoff_ms * (2 ** (attempt - 1))) / 1000
                self.logger.warning(
                    "opencode transient failure. Retrying.",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    reason=exc.reason,
                    stderr_summary=summary,
                )
                await asyncio.sleep(backoff_sec)

        raise RuntimeError(f"{operation_name} failed before starting")

    def _raise_for_exit_failure(self, returncode: int, stderr_text: str, *, streamed: bool) -> None:
        err_excerpt = (stderr_text or "unknown error")[:1000]
        lower_excerpt = err_excerpt.lower()
        if returncode in {2, 126, 127} or any(
            marker in lower_excerpt
            for marker in ("unknown option", "invalid option", "invalid argument", "permission denied", "access denied")
        ):
            raise _NonRetryableOpencodeError(f"opencode exited with code {returncode}: {err_excerpt}")
        # A turn that already produced output may have edited files; never replay it.
        if returncode in {1, 124, 137} and not streamed:
            raise _RetryableOpencodeError(
                f"opencode exited with retryable code {returncode}", stderr_summary=err_excerpt[:300]
            )
        raise _NonRetryableOpencodeError(f"opencode exited with code {returncode}: {err_excerpt}")

    def _build_args(self, prompt: str, session_id: str | None) -> list[str]:
        args = ["run", "--format", "json"]
        if session_id:
            args += ["--session", session_id]
        if self.options.model:
            args += ["--model", self.options.model]
        args.append(prompt)
        return args


class OpencodeEventStream:
    """Accumulates `opencode run --format json` output one line at a time.

    Lines that are not JSON objects are skipped. Text parts are re-sent as they
    grow, so the last copy of each part id wins.
    """

    def __init__(self, session_id: str | None = None):
        self.session_id = session_id
        self.events: list[dict[str, Any]] = []
        self.steps = 0
        self._text_parts: dict[str, str] = {}

    def feed(self, raw: str) -> dict[str, Any] | None:
        event = _parse_event_line(raw)
        if event is None:
            return None
        self.events.append(event)
        if isinstance(event.get("sessionID"), str) and event["sessionID"]:
            self.session_id = event["sessionID"]
        event_type = event.get("type")
        if event_type == "step_finish":
            self.steps += 1
        elif event_type == "text":
            self._record_text(event)
        return event

    def result(self) -> OpencodeTurnResult:
        text = "\n\n".join(part.strip() for part in self._text_parts.values() if part.strip())
        return OpencodeTurnResult(
            text=text, session_id=self.session_id, steps=self.steps, events=list(self.events)
        )

    def _record_text(self, event: dict[str, Any]) -> None:
        part = event.get("part") if isinstance(event.get("part"), dict) else {}
        text = part.get("text")
        if not isinstance(text, str):
            return
        part_id = part.get("id") if isinstance(part.get("id"), str) else f"part-{len(self._text_parts)}"
        self._text_parts[part_id] = text


def _parse_event_line(raw: str) -> dict[str, Any] | None:
    line = raw.strip()
    if not (line.startswith("{") and line.endswith("}")):
        return None
    try:
        parsed = json.loads(line)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


async def _read_all(stream: asyncio.StreamReader | None) -> bytes:
    if stream is None:
        return b""
    return await stream.read()


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        return
    await proc.wait()
