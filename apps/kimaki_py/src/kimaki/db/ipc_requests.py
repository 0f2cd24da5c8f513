from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import update

from kimaki.db.database import Database
from kimaki.db.models import (
    OPEN_IPC_STATUSES,
    IpcRequest,
    IpcRequestStatus,
    utcnow,
)

SHUTDOWN_RESPONSE = json.dumps({"error": "Bot shutting down"})
STALE_RESPONSE = json.dumps({"error": "Request timed out"})


class IpcRequestStore:
    """Persistence for the plugin <-> bot request table.

    Every status change is a conditional UPDATE guarded on the current status,
    so a row can only be claimed once and a terminal row is never rewritten.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] | None = None):
        self.database = database
        self.clock = clock or utcnow

    async def create_ipc_request(
        self,
        *,
        type: str,
        session_id: str,
        thread_id: str,
        payload: str,
    ) -> IpcRequest:
        now = self.clock()
        request = IpcRequest(
            id=uuid.uuid4().hex,
            type=type,
            session_id=session_id,
            thread_id=thread_id,
            payload=payload,
            status=IpcRequestStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        async with self.database.session() as session:
            session.add(request)
        return request

    async def claim_pending_ipc_requests(self) -> list[IpcRequest]:
        """Move every pending row to processing in one statement and return them oldest-first."""
        stmt = (
            update(IpcRequest)
            .where(IpcRequest.status == IpcRequestStatus.PENDING.value)
            .values(status=IpcRequestStatus.PROCESSING.value, updated_at=self.clock())
            .returning(IpcRequest)
        )
        async with self.database.session() as session:
            claimed = list((await session.scalars(stmt)).all())
        claimed.sort(key=lambda row: (row.created_at, row.id))
        return claimed

    async def complete_ipc_request(self, *, id: str, response: str) -> bool:
        """Write the terminal response. Returns False when the row was already closed."""
        stmt = (
            update(IpcRequest)
            .where(IpcRequest.id == id, IpcRequest.status.in_(OPEN_IPC_STATUSES))
            .values(
                response=response,
                status=IpcRequestStatus.COMPLETED.value,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(stmt)
        return bool(result.rowcount)

    async def get_ipc_request_by_id(self, id: str) -> IpcRequest | None:
        async with self.database.session() as session:
            return await session.get(IpcRequest, id)

    async def cancel_all_pending_ipc_requests(self) -> int:
        """Cancel pending and processing rows (startup cleanup and shutdown)."""
        stmt = (
            update(IpcRequest)
            .where(IpcRequest.status.in_(OPEN_IPC_STATUSES))
            .values(
                status=IpcRequestStatus.CANCELLED.value,
                response=SHUTDOWN_RESPONSE,
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(stmt)
        return int(result.rowcount or 0)

    async def cancel_stale_processing_requests(self, *, ttl_ms: int) -> int:
        now = self.clock()
        cutoff = now - timedelta(milliseconds=ttl_ms)
        stmt = (
            update(IpcRequest)
            .where(
                IpcRequest.status == IpcRequestStatus.PROCESSING.value,
                IpcRequest.updated_at < cutoff,
            )
            .values(
                status=IpcRequestStatus.CANCELLED.value,
                response=STALE_RESPONSE,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self.database.session() as session:
            result = await session.execute(stmt)
        return int(result.rowcount or 0)

    async def wait_for_response(
        self, id: str, *, timeout_ms: int, poll_ms: int = 200
    ) -> dict[str, Any]:
        """Worker-side helper: poll until the request is closed and return its response."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000
        while True:
            request = await self.get_ipc_request_by_id(id)
            if request is None:
                raise KeyError(f"unknown IPC request: {id}")
            if request.status not in OPEN_IPC_STATUSES:
                return parse_response(request.response)
            if loop.time() >= deadline:
                raise TimeoutError(f"IPC request {id} still {request.status} after {timeout_ms}ms")
            await asyncio.sleep(poll_ms / 1000)


def parse_response(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"error": raw}
    return parsed if isinstance(parsed, dict) else {"result": parsed}
