from __future__ import annotations

from kimaki.adapters.discord_gateway import DiscordGateway
from kimaki.config import read_env
from kimaki.db.database import Database
from kimaki.db.ipc_requests import IpcRequestStore
from kimaki.db.thread_sessions import ThreadSessionStore
from kimaki.ipc.action_buttons import ActionButtonQueue
from kimaki.ipc.dispatcher import IpcDispatcher
from kimaki.ipc.file_upload import DiscordFileUploadPrompter
from kimaki.services.logger import component_logger, create_logger
from kimaki.services.opencode_runtime import OpencodeRuntimeOptions, OpencodeRuntimeService


class KimakiApp:
    def __init__(self) -> None:
        self.env = read_env()
        self.logger = create_logger(self.env.LOG_LEVEL)

        self.database = Database(
            self.env.resolve_database_url(), logger=component_logger(self.logger, "db")
        )
        self.ipc_requests = IpcRequestStore(self.database)
        self.thread_sessions = ThreadSessionStore(self.database)
        self.action_buttons = ActionButtonQueue()

        self.opencode = OpencodeRuntimeService(
            logger=component_logger(self.logger, "opencode"),
            options=OpencodeRuntimeOptions(
                binary=self.env.OPENCODE_BIN,
                timeout_ms=self.env.OPENCODE_TIMEOUT_MS,
                model=self.env.OPENCODE_MODEL,
                retry_count=self.env.OPENCODE_RETRY_COUNT,
                retry_backoff_ms=self.env.OPENCODE_RETRY_BACKOFF_MS,
            ),
        )
        self.discord = DiscordGateway(
            self.env,
            opencode=self.opencode,
            sessions=self.thread_sessions,
            action_buttons=self.action_buttons,
            logger=component_logger(self.logger, "discord"),
        )
        self.dispatcher = IpcDispatcher(
            store=self.ipc_requests,
            resolve_thread=self.discord.resolve_thread,
            file_upload=DiscordFileUploadPrompter(
                self.discord.client,
                logger=component_logger(self.logger, "ipc"),
                timeout_sec=self.env.FILE_UPLOAD_TIMEOUT_SEC,
            ),
            action_buttons=self.action_buttons,
            logger=component_logger(self.logger, "ipc"),
            poll_interval_ms=self.env.IPC_POLL_INTERVAL_MS,
            stale_ttl_ms=self.env.IPC_STALE_TTL_MS,
            stale_check_interval_ms=self.env.IPC_STALE_CHECK_INTERVAL_MS,
        )
        # IPC rows reference Discord threads, so polling waits for the client.
        self.discord.ready_hooks.append(self.dispatcher.start)

    async def start(self) -> None:
        self.logger.info("Starting kimaki bot.")
        await self.database.initialize()
        await self.discord.start()

    async def stop(self) -> None:
        self.logger.info("Stopping kimaki bot.")
        try:
            await self.dispatcher.stop()
            await self.discord.stop()
        finally:
            await self.database.close()
