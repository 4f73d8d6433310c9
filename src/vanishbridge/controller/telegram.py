"""Telegram Bot API controller channel.

Operators talk to the bridge through a Telegram bot:
1. Message @BotFather on Telegram -> /newbot
2. Copy the bot token
3. Run: vanishbridge setup
4. Run: vanishbridge run

Long-polling only, so no public URL is needed. Owner ids are Telegram
user ids; in a private chat the chat id is the same number, so notify()
sends straight to the owner id.
"""

import asyncio
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx

from vanishbridge.controller.base import ControllerChannel
from vanishbridge.store.archive import CapturedArtifact, PayloadKind

logger = logging.getLogger(__name__)

MAX_MESSAGE_LEN = 4000
LONG_POLL_SECONDS = 25
CONFLICT_BACKOFF = 1.0
MAX_POLL_BACKOFF = 30
UPDATE_TYPES = ["message", "callback_query"]
CHOICE_PREFIX = "choice:"
CANCEL = "cancel"


@dataclass
class ControllerMessage:
    """A message or button press received from Telegram."""
    chat_id: str
    sender_id: str
    sender_name: str
    text: str
    message_id: str | None = None
    is_callback: bool = False
    timestamp: float = field(default_factory=time.time)
    raw: dict = field(default_factory=dict)


CommandHandler = Callable[[ControllerMessage], Awaitable[None]]


def parse_message(update: dict) -> ControllerMessage | None:
    """Parse a Telegram message update. Non-text messages are ignored."""
    message = update.get("message")
    if not message:
        return None
    text = message.get("text", "")
    if not text:
        return None

    chat = message.get("chat", {})
    sender = message.get("from", {})
    return ControllerMessage(
        chat_id=str(chat.get("id", "")),
        sender_id=str(sender.get("id", "")),
        sender_name=sender.get("username") or sender.get("first_name", ""),
        text=text,
        message_id=str(message.get("message_id", "")),
        timestamp=message.get("date", time.time()),
        raw=update,
    )


def _cut_point(text: str, max_len: int) -> int:
    """Last newline, else last space, in the back half of the window; else a hard cut."""
    for separator in ("\n", " "):
        at = text.rfind(separator, 0, max_len)
        if at >= max_len // 2:
            return at
    return max_len


def _split_message(text: str, max_len: int = MAX_MESSAGE_LEN) -> list[str]:
    """Chunks of at most max_len characters for sendMessage."""
    chunks = []
    rest = text
    while len(rest) > max_len:
        at = _cut_point(rest, max_len)
        chunks.append(rest[:at])
        rest = rest[at:].lstrip()
    if rest or not chunks:
        chunks.append(rest)
    return chunks


class TelegramController(ControllerChannel):
    """Telegram bot as the controller channel."""

    API_BASE = "https://api.telegram.org/bot{token}"

    def __init__(
        self,
        bot_token: str,
        transport: httpx.AsyncBaseTransport | None = None,
        prompt_timeout: float = 300.0,
    ):
        self.bot_token = bot_token
        self.prompt_timeout = prompt_timeout
        self._transport = transport
        self._http: httpx.AsyncClient | None = None
        self._handler: CommandHandler | None = None
        self._replies: dict[str, asyncio.Future] = {}
        self._choices: dict[str, tuple[str, asyncio.Future]] = {}
        self._pending_tasks: set[asyncio.Task] = set()

    @property
    def api_url(self) -> str:
        return self.API_BASE.format(token=self.bot_token)

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        return self._http

    def is_configured(self) -> bool:
        return bool(self.bot_token)

    def set_handler(self, handler: CommandHandler) -> None:
        """Set the handler for messages that aren't prompt replies."""
        self._handler = handler

    async def _api_call(
        self, method: str, data: dict | None = None, files: dict | None = None,
    ) -> dict:
        """Make a Telegram Bot API call."""
        client = await self._client()
        url = f"{self.api_url}/{method}"
        try:
            if files:
                resp = await client.post(url, data=data, files=files)
            elif data:
                resp = await client.post(url, json=data)
            else:
                resp = await client.get(url)
            resp.raise_for_status()
            result = resp.json()
            if not result.get("ok"):
                logger.error(f"Telegram API error: {result}")
            return result
        except Exception as e:
            logger.error(f"Telegram API call failed ({method}): {e}")
            return {"ok": False, "error": str(e)}

    async def get_me(self) -> dict:
        """Get bot info to verify token."""
        result = await self._api_call("getMe")
        return result.get("result", {})

    async def delete_webhook(self) -> bool:
        result = await self._api_call("deleteWebhook")
        return result.get("ok", False)

    # ── Sending ─────────────────────────────────

    async def send_message(
        self,
        chat_id: str,
        text: str,
        buttons: list[list[dict[str, str]]] | None = None,
    ) -> bool:
        """Send plain text, split at Telegram's length limit.

        Buttons, if any, go on the last chunk.
        """
        chunks = _split_message(text)
        for i, chunk in enumerate(chunks):
            data: dict[str, Any] = {"chat_id": chat_id, "text": chunk}
            if buttons and i == len(chunks) - 1:
                data["reply_markup"] = {"inline_keyboard": buttons}
            result = await self._api_call("sendMessage", data)
            if not result.get("ok"):
                return False
        return True

    async def send_file(
        self, chat_id: str, path: str, caption: str = "", as_photo: bool = False,
    ) -> bool:
        method, field_name = ("sendPhoto", "photo") if as_photo else ("sendDocument", "document")
        try:
            with open(path, "rb") as f:
                content = f.read()
        except OSError as e:
            logger.error(f"Cannot read {path} for upload: {e}")
            return False
        result = await self._api_call(
            method,
            data={"chat_id": chat_id, "caption": caption},
            files={field_name: (path.rsplit("/", 1)[-1], content)},
        )
        return result.get("ok", False)

    async def edit_message_text(self, chat_id: str, message_id: str, text: str) -> bool:
        result = await self._api_call("editMessageText", {
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
        })
        return result.get("ok", False)

    # ── ControllerChannel ───────────────────────

    async def notify(self, owner: str, text: str) -> bool:
        return await self.send_message(owner, text)

    async def prompt_once(self, owner: str, text: str) -> str | None:
        """Ask, then wait for the owner's next non-command message."""
        previous = self._replies.pop(owner, None)
        if previous and not previous.done():
            previous.set_result(None)

        future = asyncio.get_running_loop().create_future()
        self._replies[owner] = future
        await self.send_message(owner, text)
        try:
            return await asyncio.wait_for(future, timeout=self.prompt_timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            if self._replies.get(owner) is future:
                del self._replies[owner]

    async def present_choices(
        self, owner: str, text: str, choices: list[str]
    ) -> str | None:
        """Show one button per choice plus Cancel; wait for a press."""
        if not choices:
            return None
        previous = self._choices.pop(owner, None)
        if previous and not previous[1].done():
            previous[1].set_result(None)

        token = secrets.token_hex(4)
        future = asyncio.get_running_loop().create_future()
        self._choices[owner] = (token, future)
        buttons = [
            [{"text": choice, "callback_data": f"{CHOICE_PREFIX}{token}:{i}"}]
            for i, choice in enumerate(choices)
        ]
        buttons.append([{"text": "Cancel", "callback_data": f"{CHOICE_PREFIX}{token}:{CANCEL}"}])
        await self.send_message(owner, text, buttons=buttons)

        try:
            picked = await asyncio.wait_for(future, timeout=self.prompt_timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            current = self._choices.get(owner)
            if current and current[1] is future:
                del self._choices[owner]

        if picked is None or picked == CANCEL or not picked.isdigit() or int(picked) >= len(choices):
            return None
        return choices[int(picked)]

    async def send_artifact(self, owner: str, artifact: CapturedArtifact) -> bool:
        when = datetime.fromtimestamp(artifact.timestamp).strftime("%Y-%m-%d %H:%M:%S")
        label = f"🗑 {artifact.kind.value} · {when}"
        if artifact.is_text:
            try:
                body = artifact.read_text()
            except OSError as e:
                logger.error(f"Cannot read artifact {artifact.path}: {e}")
                return False
            if artifact.kind == PayloadKind.DOCUMENT:
                body = f"📄 {body}"
            return await self.send_message(owner, f"{label}\n{body}")
        as_photo = artifact.kind in (PayloadKind.IMAGE, PayloadKind.VIDEO)
        return await self.send_file(owner, str(artifact.path), caption=label, as_photo=as_photo)

    # ── Long-Polling Mode ───────────────────────

    async def get_updates(self, offset: int = 0, timeout: int = 30) -> list[dict]:
        """One long-poll round. Timeouts, conflicts and errors all yield []."""
        params: dict[str, Any] = {
            "timeout": timeout,
            "allowed_updates": json.dumps(UPDATE_TYPES),
        }
        if offset:
            params["offset"] = offset

        client = await self._client()
        try:
            # HTTP timeout must outlast the long poll
            resp = await client.get(
                f"{self.api_url}/getUpdates", params=params, timeout=timeout + 10,
            )
        except httpx.ReadTimeout:
            return []
        except httpx.HTTPError as e:
            logger.error(f"getUpdates request failed: {e}")
            return []

        if resp.status_code == 409:
            # Another process polls with the same token
            logger.warning(f"getUpdates conflict, backing off {CONFLICT_BACKOFF}s")
            await asyncio.sleep(CONFLICT_BACKOFF)
            return []

        try:
            body = resp.json()
        except ValueError:
            body = None
        if resp.is_error or not isinstance(body, dict) or not body.get("ok"):
            logger.error(f"getUpdates rejected ({resp.status_code}): {body}")
            return []
        return body.get("result") or []

    async def start_polling(
        self,
        interval: float = 1.0,
        shutdown_event: asyncio.Event | None = None,
    ) -> None:
        """Poll for commands until `shutdown_event` is set, then let running commands finish."""
        stop = shutdown_event or asyncio.Event()

        # getUpdates returns nothing while a webhook is registered
        await self.delete_webhook()
        me = await self.get_me()
        logger.info(f"Listening for commands as @{me.get('username', 'unknown')}")

        offset = 0
        failures = 0
        while not stop.is_set():
            try:
                offset = await self._poll_once(offset)
            except asyncio.CancelledError:
                logger.info("Command polling cancelled")
                break
            except Exception as e:
                failures += 1
                delay = min(2 ** failures, MAX_POLL_BACKOFF)
                logger.error(f"Polling failed {failures}x, retry in {delay}s: {e}")
                await asyncio.sleep(delay)
                continue
            failures = 0
            await asyncio.sleep(interval)

        await self._drain()
        logger.info("Stopped listening for commands")

    async def _poll_once(self, offset: int) -> int:
        """Dispatch one batch of updates; returns the next offset."""
        for update in await self.get_updates(offset=offset, timeout=LONG_POLL_SECONDS):
            offset = max(offset, update.get("update_id", 0) + 1)
            await self.dispatch_update(update)
        return offset

    async def _drain(self) -> None:
        if not self._pending_tasks:
            return
        logger.info(f"Waiting for {len(self._pending_tasks)} running commands")
        await asyncio.gather(*self._pending_tasks, return_exceptions=True)

    async def dispatch_update(self, update: dict) -> None:
        """Route one update: prompt replies resolve waiters, the rest go to the handler."""
        callback = update.get("callback_query")
        if callback:
            msg = await self._handle_callback(callback)
        else:
            msg = parse_message(update)
            if msg and self._resolve_reply(msg):
                return

        if msg and self._handler:
            # Handle concurrently so a command waiting on a prompt
            # doesn't block polling
            task = asyncio.create_task(self._safe_handle(msg))
            self._pending_tasks.add(task)
            task.add_done_callback(self._pending_tasks.discard)

    def _resolve_reply(self, msg: ControllerMessage) -> bool:
        future = self._replies.get(msg.sender_id)
        if future is None or future.done() or msg.text.startswith("/"):
            return False
        future.set_result(msg.text.strip())
        return True

    async def _handle_callback(self, callback: dict) -> ControllerMessage | None:
        """Answer a button press; choices resolve waiters, anything else becomes a message."""
        callback_id = callback.get("id", "")
        data = callback.get("data", "")
        message = callback.get("message", {})
        chat_id = str(message.get("chat", {}).get("id", ""))
        sender = callback.get("from", {})
        sender_id = str(sender.get("id", ""))

        # Answer the callback to remove the "loading" animation
        await self._api_call("answerCallbackQuery", {"callback_query_id": callback_id})

        if not data or not chat_id:
            return None

        if data.startswith(CHOICE_PREFIX):
            token, _, picked = data[len(CHOICE_PREFIX):].partition(":")
            waiting = self._choices.get(sender_id)
            if waiting and waiting[0] == token and not waiting[1].done():
                waiting[1].set_result(picked)
            return None

        return ControllerMessage(
            chat_id=chat_id,
            sender_id=sender_id,
            sender_name=sender.get("username") or sender.get("first_name", ""),
            text=data,
            message_id=str(message.get("message_id", "")),
            is_callback=True,
            raw=callback,
        )

    async def _safe_handle(self, msg: ControllerMessage) -> None:
        try:
            await self._handler(msg)
        except Exception as e:
            logger.error(f"Error handling message from {msg.sender_name}: {e}")

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
