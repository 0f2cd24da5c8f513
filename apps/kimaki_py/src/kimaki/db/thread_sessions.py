from __future__ import annotations

from kimaki.db.database import Database
from kimaki.db.models import ThreadSession, utcnow


class ThreadSessionStore:
    def __init__(self, database: Database):
        self.database = database

    async def get_session_id(self, thread_id: str) -> str | None:
        async with self.database.session() as session:
            row = await session.get(ThreadSession, thread_id)
            return row.session_id if row is not None else None

    async def set_session_id(self, thread_id: str, session_id: str, directory: str) -> None:
        async with self.database.session() as session:
            row = await session.get(ThreadSession, thread_id)
            if row is None:
                session.add(
                    ThreadSession(
                        thread_id=thread_id,
                        session_id=session_id,
                        directory=directory,
                    )
                )
                return
            row.session_id = session_id
            row.directory = directory
            row.updated_at = utcnow()
