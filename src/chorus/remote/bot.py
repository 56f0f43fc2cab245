"""
Chat bridge: one bot, one owner, prompts relayed to a headless agent.

Updates are long-polled and each one is handled in its own task so that
/cancel and /status stay responsive while an exchange is streaming.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import httpx

from ..errors import ChorusError
from .agent_runner import AgentRunner, EventKind
from .config import BridgeConfig
from .format import escape_html, format_cost, format_duration, format_output, split_message
from .ipc import Error, IpcWriter, Paired, Prompt, Ready, Result
from .pairing import ClaimResult, GateDecision, PairingGate
from .telegram import TelegramClient, TelegramError

logger = logging.getLogger(__name__)

BOT_COMMANDS = [
    {"command": "start", "description": "Connect or show the menu"},
    {"command": "help", "description": "Usage examples"},
    {"command": "project", "description": "Show or change the project directory"},
    {"command": "pwd", "description": "Show the current project"},
    {"command": "new", "description": "Start a fresh conversation"},
    {"command": "cancel", "description": "Abort the running task"},
    {"command": "status", "description": "Session info"},
]

HELP_TEXT = "\n".join([
    "<b>Usage</b>",
    "",
    "Just type your prompt like in a terminal session:",
    '<i>"fix the bug in auth.ts"</i>',
    '<i>"add tests for the user service"</i>',
    '<i>"explain the payment flow"</i>',
    "",
    "Conversations persist automatically. Use /new for a fresh session.",
])


@dataclass
class Conversation:
    chat_id: int
    project_dir: str
    last_session_id: Optional[str] = None
    active: Optional[object] = None


class ProgressReporter:
    """Edits one status message, at most once per ``interval`` seconds."""

    def __init__(
        self,
        telegram: TelegramClient,
        chat_id: int,
        message_id: int,
        interval: float = 1.5,
        visible: int = 6,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.telegram = telegram
        self.chat_id = chat_id
        self.message_id = message_id
        self.interval = interval
        self.visible = visible
        self.tool_lines: List[str] = []
        self._clock = clock
        self._last: Optional[float] = None

    async def show(self, html: str) -> bool:
        now = self._clock()
        if self._last is not None and now - self._last < self.interval:
            return False
        self._last = now
        try:
            await self.telegram.edit_message_text(self.chat_id, self.message_id, html, parse_mode="HTML")
        except (TelegramError, httpx.HTTPError) as e:
            # Rate limited or unchanged text.
            logger.debug(f"Progress update skipped: {e}")
        return True

    async def add_tool(self, line: str) -> bool:
        self.tool_lines.append(line)
        visible = self.tool_lines[-self.visible:]
        return await self.show("<b>Working...</b>\n\n" + "\n".join(escape_html(l) for l in visible))


def parse_command(text: str, bot_username: Optional[str] = None) -> Tuple[Optional[str], str]:
    """Split ``/cmd@bot args`` into ``("cmd", "args")``; non-commands give ``(None, text)``."""
    if not text.startswith("/"):
        return None, text
    parts = text.split(maxsplit=1)
    name = parts[0][1:]
    rest = parts[1].strip() if len(parts) > 1 else ""
    if "@" in name:
        name, _, target = name.partition("@")
        if bot_username and target.lower() != bot_username.lower():
            return None, text
    return name.lower(), rest


class RemoteBridge:
    def __init__(
        self,
        config: BridgeConfig,
        telegram: TelegramClient,
        runner: Optional[AgentRunner] = None,
        gate: Optional[PairingGate] = None,
        ipc: Optional[IpcWriter] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.telegram = telegram
        self.runner = runner or AgentRunner(config.agent_command, max_time=config.max_time)
        self.gate = gate or PairingGate(config.owner_id, config.pairing_code)
        self.ipc = ipc or IpcWriter()
        self.bot_username: Optional[str] = None
        self._clock = clock
        self._conversations: Dict[int, Conversation] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._commands = {
            "start": self.cmd_start,
            "help": self.cmd_help,
            "project": self.cmd_project,
            "pwd": self.cmd_pwd,
            "new": self.cmd_new,
            "cancel": self.cmd_cancel,
            "status": self.cmd_status,
        }

    def conversation(self, chat_id: int) -> Conversation:
        if chat_id not in self._conversations:
            self._conversations[chat_id] = Conversation(chat_id=chat_id, project_dir=self.config.project_dir)
        return self._conversations[chat_id]

    # -- polling -------------------------------------------------------------

    async def run(self) -> None:
        me = await self.telegram.get_me()
        self.bot_username = me.get("username") or ""
        logger.info(f"Bot @{self.bot_username} is running.")
        logger.info(f"Project: {self.config.project_dir}")
        logger.info(f"Owner: {self.gate.owner_id or self.gate.mode + ' mode'}")
        self.ipc.emit(Ready(bot_username=self.bot_username))
        try:
            await self.telegram.set_my_commands(BOT_COMMANDS)
        except (TelegramError, httpx.HTTPError) as e:
            logger.warning(f"Could not register bot commands: {e}")

        offset = None
        try:
            while True:
                try:
                    updates = await self.telegram.get_updates(offset, timeout=self.config.poll_timeout)
                except (TelegramError, httpx.HTTPError) as e:
                    logger.warning(f"Polling failed: {e}")
                    await asyncio.sleep(self.config.retry_delay)
                    continue
                for update in updates:
                    offset = update["update_id"] + 1
                    self._spawn(self.handle_update(update))
        finally:
            self.runner.cancel_all()
            for task in list(self._tasks):
                task.cancel()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Update handler failed: {task.exception()}")

    async def handle_update(self, update: Dict[str, Any]) -> None:
        message = update.get("message")
        if not message or not isinstance(message.get("text"), str):
            return
        text = message["text"]
        chat_id = message["chat"]["id"]
        sender = message.get("from") or {}

        decision = self.gate.authorize(sender.get("id"), text)
        if decision == GateDecision.PAIR_REQUIRED:
            await self.reply(chat_id, "Send /start <code>your pairing code</code> to connect.", html=True)
            return
        if decision == GateDecision.UNAUTHORIZED:
            logger.warning(f"Unauthorized message from user {sender.get('id')}")
            await self.reply(chat_id, "Unauthorized. This bot is linked to another account.")
            return

        command, arg = parse_command(text, self.bot_username)
        handler = self._commands.get(command) if command else None
        if handler is not None:
            await handler(chat_id, sender, arg)
            return
        await self.handle_prompt(chat_id, sender, text)

    async def reply(self, chat_id: int, text: str, html: bool = False) -> Dict[str, Any]:
        return await self.telegram.send_message(chat_id, text, parse_mode="HTML" if html else None)

    # -- commands ------------------------------------------------------------

    async def cmd_start(self, chat_id: int, sender: Dict[str, Any], code: str) -> None:
        if self.gate.mode == "pairing":
            result = self.gate.claim(sender.get("id"), code)
            if result == ClaimResult.MISSING_CODE:
                await self.reply(
                    chat_id,
                    "Welcome! Send /start <code>your_pairing_code</code> to connect this bot to your Chorus.",
                    html=True,
                )
                return
            if result == ClaimResult.INVALID_CODE:
                await self.reply(chat_id, "Invalid pairing code. Check your Chorus app and try again.")
                return
            if result == ClaimResult.PAIRED:
                self.ipc.emit(Paired(
                    user_id=sender["id"],
                    username=sender.get("username", ""),
                    first_name=sender.get("first_name", ""),
                ))
                await self.reply(chat_id, "\n".join([
                    "<b>Connected!</b>",
                    "",
                    "You're now linked to Chorus. Send any message and the agent will execute it in your project.",
                    "",
                    f"<b>Project:</b> <code>{escape_html(self.conversation(chat_id).project_dir)}</code>",
                    "",
                    "Type /help for commands.",
                ]), html=True)
                return

        await self.reply(chat_id, "\n".join([
            "<b>Chorus Remote</b>",
            "",
            "Send any message and the agent will execute it in your project and return the result.",
            "",
            f"<b>Project:</b> <code>{escape_html(self.conversation(chat_id).project_dir)}</code>",
            "",
            "<b>Commands:</b>",
            "/project <code>&lt;path&gt;</code>: change project",
            "/pwd: show current project",
            "/new: fresh conversation",
            "/cancel: abort running task",
            "/status: session info",
        ]), html=True)

    async def cmd_help(self, chat_id: int, sender: Dict[str, Any], arg: str) -> None:
        await self.reply(chat_id, HELP_TEXT, html=True)

    async def cmd_project(self, chat_id: int, sender: Dict[str, Any], path: str) -> None:
        conv = self.conversation(chat_id)
        if not path:
            await self.reply(chat_id, f"Project: <code>{escape_html(conv.project_dir)}</code>", html=True)
            return
        conv.project_dir = os.path.expanduser(path)
        conv.last_session_id = None
        await self.reply(chat_id, f"Project set: <code>{escape_html(conv.project_dir)}</code>", html=True)

    async def cmd_pwd(self, chat_id: int, sender: Dict[str, Any], arg: str) -> None:
        conv = self.conversation(chat_id)
        session = f"\nSession: <code>{conv.last_session_id[:12]}...</code>" if conv.last_session_id else ""
        await self.reply(chat_id, f"<code>{escape_html(conv.project_dir)}</code>{session}", html=True)

    async def cmd_new(self, chat_id: int, sender: Dict[str, Any], arg: str) -> None:
        self.conversation(chat_id).last_session_id = None
        await self.reply(chat_id, "Fresh session started.")

    async def cmd_cancel(self, chat_id: int, sender: Dict[str, Any], arg: str) -> None:
        if self.runner.cancel(chat_id):
            self.conversation(chat_id).active = None
            await self.reply(chat_id, "Task cancelled.")
        else:
            await self.reply(chat_id, "No active task.")

    async def cmd_status(self, chat_id: int, sender: Dict[str, Any], arg: str) -> None:
        conv = self.conversation(chat_id)
        state = "Active" if conv.active is not None or self.runner.is_running(chat_id) else "Idle"
        await self.reply(chat_id, f"<b>{state}</b> in <code>{escape_html(conv.project_dir)}</code>", html=True)

    # -- prompts -------------------------------------------------------------

    async def handle_prompt(self, chat_id: int, sender: Dict[str, Any], prompt: str) -> None:
        conv = self.conversation(chat_id)
        if conv.active is not None or self.runner.is_running(chat_id):
            await self.reply(chat_id, "A task is already running. /cancel to abort.")
            return
        token = object()
        conv.active = token
        user_id = sender.get("id")
        try:
            self.ipc.emit(Prompt(user_id=user_id, text=prompt))
            status = await self.reply(chat_id, "Starting Claude...")
            status_id = status["message_id"]
            progress = ProgressReporter(
                self.telegram,
                chat_id,
                status_id,
                interval=self.config.progress_interval,
                visible=self.config.progress_lines,
                clock=self._clock,
            )
            result_text = ""
            cost = None
            duration_ms = None
            try:
                async for event in self.runner.run(
                    chat_id, prompt, conv.project_dir, resume_id=conv.last_session_id, max_time=self.config.max_time
                ):
                    if event.kind == EventKind.PROGRESS:
                        await progress.show(escape_html(event.content))
                    elif event.kind == EventKind.TOOL:
                        await progress.add_tool(event.content)
                    elif event.kind == EventKind.TEXT:
                        result_text = event.content
                    elif event.kind == EventKind.RESULT:
                        result_text = event.content
                        cost, duration_ms = event.cost, event.duration_ms
                        if event.session_id:
                            conv.last_session_id = event.session_id
                    elif event.kind == EventKind.ERROR:
                        result_text = f"Error: {event.content}"
            except ChorusError as e:
                logger.error(f"Exchange for chat {chat_id} failed: {e}")
                self.ipc.emit(Error(message=str(e)))
                await self.report_error(chat_id, status_id, str(e))
                return

            if conv.active is not token:
                # Cancelled; /cancel already answered.
                await self._delete(chat_id, status_id)
                return

            await self.send_result(chat_id, result_text, status_id)
            self.ipc.emit(Result(
                user_id=user_id,
                prompt=prompt,
                text=result_text,
                session_id=conv.last_session_id,
                tools=len(progress.tool_lines),
                cost=cost,
            ))
            if conv.last_session_id:
                parts = []
                if progress.tool_lines:
                    parts.append(f"{len(progress.tool_lines)} tools")
                if duration_ms is not None:
                    parts.append(format_duration(duration_ms))
                if cost is not None:
                    parts.append(format_cost(cost))
                parts.append(conv.last_session_id[:8])
                await self.reply(chat_id, f"<i>{escape_html(' | '.join(parts))}</i>", html=True)
        finally:
            if conv.active is token:
                conv.active = None

    async def send_result(self, chat_id: int, text: str, status_id: int) -> None:
        await self._delete(chat_id, status_id)
        if not text.strip():
            await self.reply(chat_id, "Done (no output).")
            return
        limit = self.config.max_message_length
        for chunk in split_message(format_output(text), limit):
            try:
                await self.reply(chat_id, chunk, html=True)
            except TelegramError as e:
                logger.warning(f"HTML reply rejected, sending plain text: {e}")
                await self.reply(chat_id, text[:limit])
                break

    async def report_error(self, chat_id: int, status_id: int, message: str) -> None:
        try:
            await self.telegram.edit_message_text(
                chat_id, status_id, f"<b>Error:</b> {escape_html(message)}", parse_mode="HTML"
            )
        except (TelegramError, httpx.HTTPError):
            await self.reply(chat_id, f"Error: {message}")

    async def _delete(self, chat_id: int, message_id: int) -> None:
        try:
            await self.telegram.delete_message(chat_id, message_id)
        except (TelegramError, httpx.HTTPError) as e:
            logger.debug(f"Could not delete message {message_id}: {e}")
