from __future__ import annotations

import re
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import discord

from kimaki.config import AppEnv
from kimaki.db.thread_sessions import ThreadSessionStore
from kimaki.ipc.action_buttons import (
    ActionButtonOption,
    ActionButtonQueue,
    ActionButtonsView,
)
from kimaki.ipc.dispatcher import ThreadNotFoundError
from kimaki.services.logger import component_logger
from kimaki.services.opencode_runtime import OpencodeRuntimeService
from kimaki.services.thread_queue import (
    ThreadRequestSerializer,
    ThreadWorkItem,
    TurnContext,
)

DISCORD_MESSAGE_LIMIT = 1900
THREAD_NAME_LIMIT = 100
# Buttons are queued over IPC while the turn runs; give a late row one poll cycle.
ACTION_BUTTONS_GRACE_SEC = 0.5

ReadyHook = Callable[[], Awaitable[None]]


class DiscordGateway:
    def __init__(
        self,
        env: AppEnv,
        opencode: OpencodeRuntimeService,
        sessions: ThreadSessionStore,
        action_buttons: ActionButtonQueue,
        logger: Any,
        clock: Any | None = None,
    ):
        self.env = env
        self.opencode = opencode
        self.sessions = sessions
        self.action_buttons = action_buttons
        self.logger = logger
        self.clock = clock or time.time
        self.ready_hooks: list[ReadyHook] = []
        self._ready_fired = False
        self._allowlist_user_ids = parse_allowlist_user_ids(self.env.DISCORD_ALLOWLIST_USER_IDS)
        self.serializer = ThreadRequestSerializer(
            self.run_turn,
            component_logger(logger, "queue"),
            interrupt_timeout_ms=self.env.THREAD_INTERRUPT_TIMEOUT_MS,
            on_error=self.report_failure,
        )

        intents = discord.Intents.default()
        intents.message_content = True
        intents.messages = True
        intents.guilds = True

        self.client = discord.Client(intents=intents)
        self.client.event(self.on_ready)
        self.client.event(self.on_message)

    async def start(self) -> None:
        if not self.env.DISCORD_BOT_TOKEN:
            self.logger.warning("DISCORD_BOT_TOKEN is not set. Discord gateway disabled.")
            return
        await self.client.start(self.env.DISCORD_BOT_TOKEN)

    async def stop(self) -> None:
        await self.serializer.shutdown()
        if not self.client.is_closed():
            await self.client.close()

    async def on_ready(self) -> None:
        self.logger.info("Discord client ready.", user=str(self.client.user))
        # on_ready fires again after every gateway reconnect.
        if self._ready_fired:
            return
        self._ready_fired = True
        for hook in self.ready_hooks:
            await hook()

    async def on_message(self, message: discord.Message) -> None:
        await self.handle_message(message)

    async def handle_message(self, message: Any) -> None:
        if getattr(message.author, "bot", False):
            return
        if getattr(message, "guild", None) is None:
            return
        user_id = str(getattr(getattr(message, "author", None), "id", ""))
        if self._allowlist_user_ids and user_id not in self._allowlist_user_ids:
            await message.reply("Only allowlisted users can use this bot.")
            return

        prompt = sanitize_incoming_content(
            str(getattr(message, "content", "")),
            getattr(self.client.user, "id", None),
        )
        if not prompt:
            return

        channel = message.channel
        try:
            if not is_thread_channel(channel):
                channel = await message.create_thread(
                    name=build_thread_name(prompt), auto_archive_duration=1440
                )
        except Exception as exc:
            self.logger.error("Failed to create session thread.", error=str(exc))
            await message.reply(
                f"Could not start a thread: {truncate_for_discord(str(exc), 300)}"
            )
            return

        self.submit(
            ThreadWorkItem(
                thread_id=str(channel.id),
                prompt=prompt,
                author_id=user_id,
                message=message,
                received_at=float(self.clock()),
            )
        )

    def submit(self, item: ThreadWorkItem):
        self.logger.info(
            "Queued thread message.",
            thread_id=item.thread_id,
            busy=self.serializer.is_busy(item.thread_id),
        )
        return self.serializer.submit(item)

    async def resolve_thread(self, thread_id: str) -> Any:
        try:
            snowflake = int(thread_id)
        except (TypeError, ValueError):
            raise ThreadNotFoundError(thread_id, "is not a valid id") from None

        channel = self.client.get_channel(snowflake)
        if channel is None:
            try:
                channel = await self.client.fetch_channel(snowflake)
            except discord.HTTPException as exc:
                raise ThreadNotFoundError(thread_id, f"could not be fetched: {exc}") from exc
        if not is_thread_channel(channel):
            raise ThreadNotFoundError(thread_id, "is not a thread")
        return channel

    async def run_turn(self, item: ThreadWorkItem, ctx: TurnContext) -> None:
        thread = await self.resolve_thread(item.thread_id)
        directory = str(Path(self.env.DEFAULT_PROJECT_DIRECTORY).expanduser().resolve())
        session_id = await self.sessions.get_session_id(item.thread_id)

        result = await self.opencode.run_turn(
            directory=directory,
            prompt=item.prompt,
            session_id=session_id,
            on_step_finish=ctx.checkpoint,
        )
        if result.session_id and result.session_id != session_id:
            await self.sessions.set_session_id(item.thread_id, result.session_id, directory)
            session_id = result.session_id

        # A message that arrived during the last step replaces this reply.
        await ctx.checkpoint()
        for chunk in split_for_discord(result.text or "(no output)", DISCORD_MESSAGE_LIMIT):
            await thread.send(chunk)

        if session_id:
            await self._render_action_buttons(thread, session_id)

    async def _render_action_buttons(self, thread: Any, session_id: str) -> None:
        request = await self.action_buttons.wait_for_request(
            session_id, timeout=ACTION_BUTTONS_GRACE_SEC
        )
        if request is None:
            return
        view = ActionButtonsView(
            request,
            on_click=self.on_action_button,
            timeout=self.env.ACTION_BUTTONS_TTL_SEC,
        )
        await thread.send("Choose an action:", view=view)

    async def on_action_button(
        self, thread_id: str, option: ActionButtonOption, interaction: Any
    ) -> None:
        user = getattr(interaction, "user", None)
        self.submit(
            ThreadWorkItem(
                thread_id=thread_id,
                prompt=option.label,
                author_id=str(getattr(user, "id", "")),
                received_at=float(self.clock()),
            )
        )

    async def report_failure(self, item: ThreadWorkItem, exc: Exception) -> None:
        thread = await self.resolve_thread(item.thread_id)
        await thread.send(
            f"opencode session error: {truncate_for_discord(str(exc) or type(exc).__name__, 1800)}"
        )


def sanitize_incoming_content(content: str, bot_id: int | None) -> str:
    stripped = content
    if bot_id is not None:
        stripped = re.sub(rf"<@!?{bot_id}>", "", stripped)
    return re.sub(r"\s+", " ", stripped).strip()


def parse_allowlist_user_ids(raw: str) -> set[str]:
    return {x.strip() for x in str(raw or "").split(",") if x.strip()}


def truncate_for_discord(input_text: str, max_len: int) -> str:
    return input_text if len(input_text) <= max_len else input_text[: max_len - 3] + "..."


def build_thread_name(prompt: str) -> str:
    name = re.sub(r"\s+", " ", prompt).strip()
    return truncate_for_discord(name, THREAD_NAME_LIMIT) or "kimaki session"


def split_for_discord(text: str, max_len: int = DISCORD_MESSAGE_LIMIT) -> list[str]:
    """Split on line boundaries where possible; a single long line is hard-cut."""
    if len(text) <= max_len:
        return [text]
    parts: list[str] = []
    current = ""
    for line in text.splitlines(keepends=True):
        while len(line) > max_len:
            if current:
                parts.append(current)
                current = ""
            parts.append(line[:max_len])
            line = line[max_len:]
        if len(current) + len(line) > max_len:
            parts.append(current)
            current = ""
        current += line
    if current:
        parts.append(current)
    return parts


def is_thread_channel(channel: Any) -> bool:
    if isinstance(channel, discord.Thread):
        return True
    channel_type = getattr(channel, "type", None)
    thread_types = {
        discord.ChannelType.public_thread,
        discord.ChannelType.private_thread,
        discord.ChannelType.news_thread,
    }
    return channel_type in thread_types
