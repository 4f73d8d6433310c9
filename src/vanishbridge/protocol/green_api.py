"""WhatsApp protocol driver backed by Green API.

Green API bridges a WhatsApp account through their servers, one
"instance" per account. Each linked account must have an instance
configured under green_api.instances in config.yaml.

How a connection runs:
1. No saved credentials -> request a phone pairing code
   (getAuthorizationCode) and report it as a pairing challenge, then
   poll getStateInstance until the operator enters the code on the phone.
2. Once authorized -> save {"instance_id", "wid", "authorized_at"} as
   credential material and report the connection open.
3. Saved credentials but the instance is no longer authorized -> the
   connection is reported closed ("credentials_rejected").
4. While open, poll receiveNotification; every notification is
   acknowledged whether or not it was understood.
"""

import asyncio
import base64
import binascii
import logging
import time
from typing import Any

import httpx

from vanishbridge.config import GreenAPIInstance
from vanishbridge.errors import ProtocolError
from vanishbridge.protocol.base import (
    EventHandler,
    ProtocolClient,
    ProtocolConnection,
    ProtocolEvent,
    ProtocolMessage,
)
from vanishbridge.store.archive import PayloadKind

logger = logging.getLogger(__name__)

FATAL_STATES = {"notAuthorized", "blocked", "yellowCard"}
MAX_CONSECUTIVE_ERRORS = 5


def _decode_b64(data: str | None) -> bytes | None:
    if not data:
        return None
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError):
        return None


def parse_message(body: dict[str, Any]) -> ProtocolMessage | None:
    """Turn an incoming/outgoing message notification body into a ProtocolMessage."""
    type_webhook = body.get("typeWebhook", "")
    if type_webhook not in ("incomingMessageReceived", "outgoingMessageReceived"):
        return None

    msg_data = body.get("messageData", {})
    sender_data = body.get("senderData", {})
    type_msg = msg_data.get("typeMessage", "")
    file_data = msg_data.get("fileMessageData", {})

    message = ProtocolMessage(
        message_id=body.get("idMessage", ""),
        conversation_id=sender_data.get("chatId", ""),
        from_me=type_webhook == "outgoingMessageReceived",
        timestamp=float(body.get("timestamp", time.time())),
        raw=body,
    )

    if type_msg == "textMessage":
        message.text = msg_data.get("textMessageData", {}).get("textMessage", "")
    elif type_msg in ("extendedTextMessage", "quotedMessage"):
        message.text = msg_data.get("extendedTextMessageData", {}).get("text", "")
    elif type_msg == "imageMessage":
        message.kind = PayloadKind.IMAGE
        message.data = _decode_b64(file_data.get("jpegThumbnail"))
        message.text = file_data.get("caption") or None
    elif type_msg == "videoMessage":
        message.kind = PayloadKind.VIDEO
        message.data = _decode_b64(file_data.get("jpegThumbnail"))
        message.text = file_data.get("caption") or None
    elif type_msg == "audioMessage":
        message.kind = PayloadKind.AUDIO
    elif type_msg == "documentMessage":
        message.kind = PayloadKind.DOCUMENT
        message.file_name = file_data.get("fileName", "")
    else:
        message.kind = PayloadKind.UNKNOWN
    return message


def parse_notification(body: dict[str, Any]) -> ProtocolEvent | None:
    """Map a Green API notification body onto a protocol event."""
    type_webhook = body.get("typeWebhook", "")

    if type_webhook == "stateInstanceChanged":
        state = body.get("stateInstance", "")
        if state in FATAL_STATES:
            return ProtocolEvent.closed(state)
        return None

    message = parse_message(body)
    if message is None:
        return None
    return ProtocolEvent.received(message)


class GreenAPIConnection(ProtocolConnection):
    """A connection to one Green API instance."""

    def __init__(
        self,
        account: str,
        instance: GreenAPIInstance,
        credentials: dict[str, Any] | None,
        on_event: EventHandler,
        http: httpx.AsyncClient,
        api_url: str,
        poll_interval: float = 2.0,
    ):
        self.account = account
        self.instance = instance
        self.credentials = credentials
        self.on_event = on_event
        self.poll_interval = poll_interval
        self._http = http
        self._base = f"{api_url.rstrip('/')}/waInstance{instance.instance_id}"
        self._task: asyncio.Task | None = None
        self._closing = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    # ── HTTP ──────────────────────────────────────

    async def _api_call(
        self,
        method: str,
        data: dict | None = None,
        suffix: str = "",
        http_method: str | None = None,
    ) -> Any:
        """Make a Green API call. Raises ProtocolError on any failure."""
        url = f"{self._base}/{method}/{self.instance.api_token}{suffix}"
        verb = http_method or ("POST" if data is not None else "GET")
        try:
            resp = await self._http.request(verb, url, json=data)
            resp.raise_for_status()
            if not resp.content:
                return {}
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProtocolError(
                f"Green API call failed ({method}): {e}",
                context={"account": self.account},
            ) from e

    async def _state(self) -> str:
        result = await self._api_call("getStateInstance")
        return (result or {}).get("stateInstance", "")

    async def _pairing_code(self) -> str:
        digits = "".join(c for c in self.account if c.isdigit())
        result = await self._api_call("getAuthorizationCode", {"phoneNumber": int(digits)})
        if not result or not result.get("status") or not result.get("code"):
            raise ProtocolError(f"No pairing code issued for {self.account}")
        return result["code"]

    # ── Lifecycle ─────────────────────────────────

    async def _emit(self, event: ProtocolEvent) -> None:
        if self._closing:
            return
        await self.on_event(event)

    async def _run(self) -> None:
        try:
            if await self._establish():
                await self._pump()
        except asyncio.CancelledError:
            pass
        except ProtocolError as e:
            logger.error(f"Green API connection for {self.account} failed: {e}")
            await self._emit(ProtocolEvent.closed("protocol_error"))
        except Exception as e:
            # A dead pump must still surface as a close
            logger.exception(f"Green API connection for {self.account} crashed: {e}")
            await self._emit(ProtocolEvent.closed("protocol_error"))

    async def _establish(self) -> bool:
        state = await self._state()

        if self.credentials is not None:
            if state == "authorized":
                await self._emit(ProtocolEvent.opened())
                return True
            await self._emit(ProtocolEvent.closed("credentials_rejected"))
            return False

        if state != "authorized":
            await self._emit(ProtocolEvent.pairing(await self._pairing_code()))
            # No timeout: the pairing stays open until the code is used.
            while not self._closing:
                await asyncio.sleep(self.poll_interval)
                state = await self._state()
                if state == "authorized":
                    break
                if state in ("blocked", "yellowCard"):
                    await self._emit(ProtocolEvent.closed(state))
                    return False

        settings = await self._api_call("getWaSettings") or {}
        await self._emit(ProtocolEvent.credentials_updated({
            "instance_id": self.instance.instance_id,
            "wid": settings.get("wid", ""),
            "authorized_at": time.time(),
        }))
        await self._emit(ProtocolEvent.opened())
        return True

    async def _pump(self) -> None:
        """Poll notifications until closed."""
        consecutive_errors = 0
        while not self._closing:
            try:
                notification = await self._api_call("receiveNotification")
                consecutive_errors = 0
            except ProtocolError as e:
                consecutive_errors += 1
                if consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    await self._emit(ProtocolEvent.closed("connection_lost"))
                    return
                backoff = min(2 ** consecutive_errors, 30)
                logger.error(f"Green API polling error (retry in {backoff}s): {e}")
                await asyncio.sleep(backoff)
                continue

            if not notification:
                await asyncio.sleep(self.poll_interval)
                continue

            receipt_id = notification.get("receiptId")
            try:
                event = parse_notification(notification.get("body", {}))
            except (TypeError, ValueError, AttributeError) as e:
                logger.warning(f"Dropping malformed notification {receipt_id}: {e}")
                event = None
            if event and event.message and event.message.kind == PayloadKind.AUDIO:
                await self._fetch_audio(event.message)

            # Always acknowledge, even if we didn't understand it
            if receipt_id is not None:
                try:
                    await self._api_call(
                        "deleteNotification", suffix=f"/{receipt_id}",
                        http_method="DELETE",
                    )
                except ProtocolError as e:
                    logger.warning(f"Failed to acknowledge notification {receipt_id}: {e}")

            if event:
                await self._emit(event)
                if event.reason:
                    return

    async def _fetch_audio(self, message: ProtocolMessage) -> None:
        url = message.raw.get("messageData", {}).get(
            "fileMessageData", {}).get("downloadUrl")
        if not url:
            return
        try:
            resp = await self._http.get(url)
            resp.raise_for_status()
            message.data = resp.content
        except httpx.HTTPError as e:
            logger.warning(f"Could not download audio {message.message_id}: {e}")

    # ── Operations ───────────────────────────────

    async def revoke_message(self, conversation_id: str, message_id: str) -> None:
        await self._api_call("deleteMessage", {
            "chatId": conversation_id,
            "idMessage": message_id,
        })

    async def logout(self) -> None:
        result = await self._api_call("logout")
        if result and result.get("isLogout") is False:
            raise ProtocolError(f"Logout refused for {self.account}")

    async def close(self) -> None:
        self._closing = True
        task = self._task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class GreenAPIProtocol(ProtocolClient):
    """Opens GreenAPIConnections for configured accounts."""

    def __init__(
        self,
        instances: dict[str, GreenAPIInstance],
        api_url: str = "https://api.green-api.com",
        poll_interval: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.instances = instances
        self.api_url = api_url
        self.poll_interval = poll_interval
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        return self._http

    async def connect(
        self,
        owner: str,
        account: str,
        credentials: dict[str, Any] | None,
        on_event: EventHandler,
    ) -> GreenAPIConnection:
        instance = self.instances.get(account)
        if instance is None:
            raise ProtocolError(
                f"No Green API instance configured for {account}",
                context={"owner": owner},
            )
        connection = GreenAPIConnection(
            account=account,
            instance=instance,
            credentials=credentials,
            on_event=on_event,
            http=await self._client(),
            api_url=self.api_url,
            poll_interval=self.poll_interval,
        )
        connection.start()
        return connection

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
