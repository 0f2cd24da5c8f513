from __future__ import annotations

import asyncio
import json
import math
import time
from collections.abc import Awaitable, Callable
from typing import Any

from kimaki.db.ipc_requests import IpcRequestStore
from kimaki.db.models import IpcRequest, IpcRequestType
from kimaki.ipc.action_buttons import ActionButtonQueue, ActionButtonsRequest, parse_buttons
from kimaki.ipc.file_upload import (
    FileUploadFailure,
    FileUploadPrompter,
    FileUploadResult,
    FileUploadSuccess,
)

DEFAULT_POLL_INTERVAL_MS = 200
# Requests stuck in processing (e.g. a file upload the user never finishes)
# are cancelled after the TTL; the sweep runs at most every check interval.
DEFAULT_STALE_TTL_MS = 5 * 60 * 1000
DEFAULT_STALE_CHECK_INTERVAL_MS = 30 * 1000

DEFAULT_UPLOAD_PROMPT = "Please upload files"
DEFAULT_MAX_FILES = 5
MAX_FILES_LIMIT = 10


class IpcDispatchError(RuntimeError):
    def __init__(self, request_id: str, reason: str):
        super().__init__(f"IPC dispatch failed for request {request_id}: {reason}")
        self.request_id = request_id
        self.reason = reason


class ThreadNotFoundError(LookupError):
    def __init__(self, thread_id: str, reason: str = "not found"):
        super().__init__(f"thread {thread_id} {reason}")
        self.thread_id = thread_id


ThreadResolver = Callable[[str], Awaitable[Any]]


class IpcDispatcher:
    """Polls ipc_requests, claims pending rows and routes them by type.

    One instance owns its poll task, the in-flight guard, the stale sweep
    timestamp and the detached file upload tasks.
    """

    def __init__(
        self,
        store: IpcRequestStore,
        resolve_thread: ThreadResolver,
        file_upload: FileUploadPrompter,
        action_buttons: ActionButtonQueue,
        logger: Any,
        *,
        poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS,
        stale_ttl_ms: int = DEFAULT_STALE_TTL_MS,
        stale_check_interval_ms: int = DEFAULT_STALE_CHECK_INTERVAL_MS,
        clock: Callable[[], float] | None = None,
    ):
        self.store = store
        self.resolve_thread = resolve_thread
        self.file_upload = file_upload
        self.action_buttons = action_buttons
        self.logger = logger
        self.poll_interval_ms = poll_interval_ms
        self.stale_ttl_ms = stale_ttl_ms
        self.stale_check_interval_ms = stale_check_interval_ms
        self.clock = clock or time.monotonic
        self._poll_task: asyncio.Task[None] | None = None
        self._starting = False
        self._ticking = False
        self._last_stale_check: float | None = None
        self._upload_tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def pending_uploads(self) -> int:
        return len(self._upload_tasks)

    async def start(self) -> None:
        if self.running or self._starting:
            self.logger.warning("IPC polling already started.")
            return
        self._starting = True
        try:
            # Nothing claimed by a previous process can still complete.
            try:
                cancelled = await self.store.cancel_all_pending_ipc_requests()
                if cancelled:
                    self.logger.info("Cancelled IPC requests left from previous run.", count=cancelled)
            except Exception as exc:
                self.logger.warning("Failed to cancel stale IPC requests.", error=str(exc))

            self._last_stale_check = None
            self._poll_task = asyncio.create_task(self._poll_loop(), name="kimaki-ipc-poll")
            self.logger.info("IPC polling started.", interval_ms=self.poll_interval_ms)
        finally:
            self._starting = False

    async def stop(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self.logger.info("IPC polling stopped.")

        uploads = list(self._upload_tasks)
        for upload in uploads:
            upload.cancel()
        if uploads:
            await asyncio.gather(*uploads, return_exceptions=True)

    async def _poll_loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.poll_interval_ms / 1000)

    async def tick(self) -> None:
        if self._ticking:
            return
        self._ticking = True
        try:
            await self._maybe_sweep_stale()
            try:
                claimed = await self.store.claim_pending_ipc_requests()
            except Exception as exc:
                self.logger.error("IPC claim failed.", error=str(exc))
                return
            for request in claimed:
                await self._dispatch_safely(request)
        finally:
            self._ticking = False

    async def _maybe_sweep_stale(self) -> None:
        now = float(self.clock())
        last = self._last_stale_check
        if last is not None and (now - last) * 1000 <= self.stale_check_interval_ms:
            return
        self._last_stale_check = now
        try:
            swept = await self.store.cancel_stale_processing_requests(ttl_ms=self.stale_ttl_ms)
            if swept:
                self.logger.warning("Cancelled stale IPC requests.", count=swept)
        except Exception as exc:
            self.logger.warning("Stale sweep failed.", error=str(exc))

    async def _dispatch_safely(self, request: IpcRequest) -> None:
        try:
            await self.dispatch_request(request)
        except Exception as exc:
            error = IpcDispatchError(request.id, f"Dispatch threw: {exc}")
            self.logger.error(
                "IPC dispatch error.",
                request_id=request.id,
                request_type=request.type,
                error=str(error),
            )
            await self._complete_quietly(request.id, {"error": str(error)})

    async def dispatch_request(self, request: IpcRequest) -> None:
        if request.type == IpcRequestType.FILE_UPLOAD.value:
            await self._dispatch_file_upload(request)
            return
        if request.type == IpcRequestType.ACTION_BUTTONS.value:
            await self._dispatch_action_buttons(request)
            return
        self.logger.warning("Unknown IPC request type.", request_id=request.id, request_type=request.type)
        await self._complete(request.id, {"error": f"Unknown IPC type: {request.type}"})

    async def _dispatch_file_upload(self, request: IpcRequest) -> None:
        payload = parse_payload(request.payload)
        if payload is None:
            await self._reject(request, "Invalid payload JSON")
            return

        thread = await self._resolve(request)
        if thread is None:
            await self._complete(request.id, {"error": "Thread not found"})
            return

        # The upload waits on a human for minutes; the tick must not block on it.
        task = asyncio.create_task(
            self._supervise_file_upload(
                request,
                thread,
                directory=str(payload.get("directory") or ""),
                prompt=str(payload.get("prompt") or DEFAULT_UPLOAD_PROMPT),
                max_files=clamp_max_files(payload.get("maxFiles")),
            ),
            name=f"kimaki-file-upload-{request.id}",
        )
        self._upload_tasks.add(task)
        task.add_done_callback(self._upload_tasks.discard)

    async def _supervise_file_upload(
        self,
        request: IpcRequest,
        thread: Any,
        *,
        directory: str,
        prompt: str,
        max_files: int,
    ) -> None:
        try:
            result = await self._run_file_upload(
                request, thread, directory=directory, prompt=prompt, max_files=max_files
            )
        except asyncio.CancelledError:
            await self._complete_quietly(request.id, {"error": "File upload cancelled"})
            raise

        if isinstance(result, FileUploadSuccess):
            response: dict[str, Any] = {"filePaths": result.file_paths}
        else:
            self.logger.error("File upload error.", request_id=request.id, error=result.error)
            response = {"error": result.error}
        await self._complete_quietly(request.id, response)

    async def _run_file_upload(
        self,
        request: IpcRequest,
        thread: Any,
        *,
        directory: str,
        prompt: str,
        max_files: int,
    ) -> FileUploadResult:
        try:
            return await self.file_upload.prompt(
                thread=thread,
                session_id=request.session_id,
                directory=directory,
                prompt=prompt,
                max_files=max_files,
            )
        except Exception as exc:
            return FileUploadFailure(error=str(exc) or "File upload failed")

    async def _dispatch_action_buttons(self, request: IpcRequest) -> None:
        payload = parse_payload(request.payload)
        if payload is None:
            await self._reject(request, "Invalid payload JSON")
            return

        buttons = parse_buttons(payload.get("buttons"))
        if not buttons:
            await self._complete(request.id, {"error": "No valid buttons"})
            return

        thread = await self._resolve(request)
        if thread is None:
            await self._complete(request.id, {"error": "Thread not found"})
            return

        self.action_buttons.queue_request(
            ActionButtonsRequest(
                session_id=request.session_id,
                thread_id=request.thread_id,
                directory=str(payload.get("directory") or ""),
                buttons=buttons,
            )
        )
        await self._complete(request.id, {"ok": True})

    async def _resolve(self, request: IpcRequest) -> Any | None:
        try:
            thread = await self.resolve_thread(request.thread_id)
        except Exception as exc:
            self.logger.warning(
                "IPC thread resolution failed.",
                request_id=request.id,
                thread_id=request.thread_id,
                error=str(exc),
            )
            return None
        return thread

    async def _reject(self, request: IpcRequest, reason: str) -> None:
        self.logger.warning(
            "IPC request rejected.",
            request_id=request.id,
            request_type=request.type,
            error=str(IpcDispatchError(request.id, reason)),
        )
        await self._complete(request.id, {"error": reason})

    async def _complete(self, request_id: str, response: dict[str, Any]) -> None:
        await self.store.complete_ipc_request(id=request_id, response=json.dumps(response))

    async def _complete_quietly(self, request_id: str, response: dict[str, Any]) -> None:
        try:
            await self._complete(request_id, response)
        except Exception as exc:
            self.logger.error(
                "Failed to write IPC response.", request_id=request_id, error=str(exc)
            )


def parse_payload(raw: str | None) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw or "")
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None


def clamp_max_files(raw: Any) -> int:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        return DEFAULT_MAX_FILES
    if not math.isfinite(raw) or not raw:
        return DEFAULT_MAX_FILES
    return min(MAX_FILES_LIMIT, max(1, int(raw)))
