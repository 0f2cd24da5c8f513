from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import discord

UPLOAD_SUBDIR = "uploads"


@dataclass(slots=True, frozen=True)
class FileUploadSuccess:
    file_paths: list[str]


@dataclass(slots=True, frozen=True)
class FileUploadFailure:
    error: str


FileUploadResult = FileUploadSuccess | FileUploadFailure


class FileUploadPrompter(Protocol):
    async def prompt(
        self,
        *,
        thread: Any,
        session_id: str,
        directory: str,
        prompt: str,
        max_files: int,
    ) -> FileUploadResult: ...


class FileUploadView(discord.ui.View):
    def __init__(self, timeout: float):
        super().__init__(timeout=timeout)
        self.clicked_by: asyncio.Future[int | None] = asyncio.get_running_loop().create_future()

    @discord.ui.button(label="Upload files", style=discord.ButtonStyle.primary)
    async def upload(
        self, interaction: discord.Interaction, button: discord.ui.Button[FileUploadView]
    ) -> None:
        if self.clicked_by.done():
            await interaction.response.send_message(
                "Upload already in progress.", ephemeral=True
            )
            return
        button.disabled = True
        await interaction.response.edit_message(view=self)
        await interaction.followup.send(
            "Send a message in this thread with your files attached.", ephemeral=True
        )
        self.clicked_by.set_result(interaction.user.id)

    async def on_timeout(self) -> None:
        if not self.clicked_by.done():
            self.clicked_by.set_result(None)


class DiscordFileUploadPrompter:
    """Button -> user attaches files in the thread -> attachments saved to disk."""

    def __init__(self, client: discord.Client, logger: Any, timeout_sec: float):
        self.client = client
        self.logger = logger
        self.timeout_sec = timeout_sec

    async def prompt(
        self,
        *,
        thread: Any,
        session_id: str,
        directory: str,
        prompt: str,
        max_files: int,
    ) -> FileUploadResult:
        view = FileUploadView(timeout=self.timeout_sec)
        await thread.send(
            f"**{prompt}**\nClick the button, then attach up to {max_files} file(s) here.",
            view=view,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout_sec
        try:
            user_id = await asyncio.wait_for(view.clicked_by, timeout=self.timeout_sec)
            if user_id is None:
                return FileUploadFailure(error="File upload timed out")

            def _has_files_from_user(message: discord.Message) -> bool:
                return (
                    getattr(message.channel, "id", None) == thread.id
                    and message.author.id == user_id
                    and bool(message.attachments)
                )

            message = await self.client.wait_for(
                "message",
                check=_has_files_from_user,
                timeout=max(deadline - loop.time(), 0.1),
            )
        except asyncio.TimeoutError:
            return FileUploadFailure(error="File upload timed out")
        finally:
            view.stop()

        paths = await save_attachments(message.attachments[:max_files], directory)
        self.logger.info(
            "Saved uploaded files.",
            session_id=session_id,
            thread_id=str(thread.id),
            count=len(paths),
        )
        return FileUploadSuccess(file_paths=paths)


async def save_attachments(attachments: list[Any], directory: str) -> list[str]:
    target_dir = (Path(directory or ".") / UPLOAD_SUBDIR).resolve()
    target_dir.mkdir(parents=True, exist_ok=True)
    saved: list[str] = []
    for attachment in attachments:
        name = sanitize_upload_filename(str(getattr(attachment, "filename", "") or "file"))
        path = target_dir / f"{attachment.id}-{name}"
        await attachment.save(path)
        saved.append(str(path))
    return saved


def sanitize_upload_filename(name: str) -> str:
    base = Path(name).name
    cleaned = re.sub(r"[^0-9A-Za-z._-]", "_", base).strip("._")
    return cleaned[:120] or "file"
