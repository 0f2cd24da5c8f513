from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import discord

ActionButtonColor = Literal["white", "blue", "green", "red"]

VALID_COLORS: frozenset[str] = frozenset({"white", "blue", "green", "red"})
MAX_BUTTONS = 3
MAX_LABEL_LENGTH = 80


@dataclass(slots=True, frozen=True)
class ActionButtonOption:
    label: str
    color: ActionButtonColor | None = None


@dataclass(slots=True)
class ActionButtonsRequest:
    session_id: str
    thread_id: str
    directory: str
    buttons: list[ActionButtonOption]
    queued_at: float = field(default_factory=time.time)


def parse_buttons(raw: Any) -> list[ActionButtonOption]:
    """Normalize model-supplied buttons; invalid entries are dropped, not rejected."""
    if not isinstance(raw, list):
        return []
    results: list[ActionButtonOption] = []
    for value in raw:
        if not isinstance(value, dict):
            continue
        raw_label = value.get("label")
        label = (raw_label if isinstance(raw_label, str) else "").strip()[:MAX_LABEL_LENGTH]
        if not label:
            continue
        raw_color = value.get("color")
        color = raw_color if isinstance(raw_color, str) and raw_color in VALID_COLORS else None
        results.append(ActionButtonOption(label=label, color=color))  # type: ignore[arg-type]
        if len(results) >= MAX_BUTTONS:
            break
    return results


def to_button_style(color: ActionButtonColor | None) -> discord.ButtonStyle:
    if color == "blue":
        return discord.ButtonStyle.primary
    if color == "green":
        return discord.ButtonStyle.success
    if color == "red":
        return discord.ButtonStyle.danger
    return discord.ButtonStyle.secondary


class ActionButtonQueue:
    """Latest button request per session, with at most one waiter per session."""

    def __init__(self) -> None:
        self._requests: dict[str, ActionButtonsRequest] = {}
        self._waiters: dict[str, asyncio.Future[ActionButtonsRequest]] = {}

    def queue_request(self, request: ActionButtonsRequest) -> None:
        waiter = self._waiters.pop(request.session_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(request)
            return
        self._requests[request.session_id] = request

    async def wait_for_request(
        self, session_id: str, timeout: float
    ) -> ActionButtonsRequest | None:
        queued = self._requests.pop(session_id, None)
        if queued is not None:
            return queued

        waiter: asyncio.Future[ActionButtonsRequest] = asyncio.get_running_loop().create_future()
        self._waiters[session_id] = waiter
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            if self._waiters.get(session_id) is waiter:
                self._waiters.pop(session_id, None)


ButtonClickHandler = Callable[[str, ActionButtonOption, Any], Awaitable[None]]


class ActionButtonsView(discord.ui.View):
    """Renders up to three buttons; a click is routed back into the thread's session."""

    def __init__(
        self,
        request: ActionButtonsRequest,
        on_click: ButtonClickHandler,
        timeout: float,
    ):
        super().__init__(timeout=timeout)
        self.request = request
        self.on_click = on_click
        self.resolved = False
        for index, option in enumerate(request.buttons[:MAX_BUTTONS]):
            button: discord.ui.Button[ActionButtonsView] = discord.ui.Button(
                label=option.label,
                style=to_button_style(option.color),
                custom_id=f"kimaki-action:{request.session_id}:{index}",
            )
            button.callback = self._make_callback(option)  # type: ignore[method-assign]
            self.add_item(button)

    def _make_callback(self, option: ActionButtonOption):
        async def _callback(interaction: discord.Interaction) -> None:
            if self.resolved:
                await interaction.response.send_message(
                    "This action was already used.", ephemeral=True
                )
                return
            self.resolved = True
            for item in self.children:
                if isinstance(item, discord.ui.Button):
                    item.disabled = True
            await interaction.response.edit_message(view=self)
            await self.on_click(self.request.thread_id, option, interaction)
            self.stop()

        return _callback
