"""Operator commands received over the controller channel.

Commands:
    /start              - Request access (admin gets Grant / Ignore buttons)
    /verify <passkey>   - Unlock access with the passkey from the admin
    /link [number]      - Link a WhatsApp number
    /unlink [number]    - Unlink a WhatsApp number
    /view               - Browse archived messages of a linked number
    /status             - Show live sessions
    /help               - Show commands

Admin only:
    /pending            - List pending access requests
    /revoke <owner>     - Remove an owner and unlink all their numbers
"""

import logging
from dataclasses import dataclass
from typing import Any

from vanishbridge.bridge import Bridge
from vanishbridge.controller.telegram import ControllerMessage, TelegramController
from vanishbridge.errors import BridgeError, NotFoundError
from vanishbridge.store.links import OwnerStatus

logger = logging.getLogger(__name__)

STATE_ICONS = {
    "initializing": "🔄",
    "awaiting_pairing": "🔗",
    "open": "🟢",
    "closed": "⚪",
}


@dataclass
class Page:
    items: list[Any]
    page: int
    total_pages: int


def paginate(items: list[Any], page: int = 1, limit: int = 5) -> Page:
    total_pages = max(1, -(-len(items) // limit))
    page = min(max(page, 1), total_pages)
    start = (page - 1) * limit
    return Page(items=items[start:start + limit], page=page, total_pages=total_pages)


class CommandRouter:
    """Turns operator messages into bridge operations."""

    def __init__(
        self,
        bridge: Bridge,
        controller: TelegramController,
        admin_id: str = "",
        pagination_limit: int = 5,
    ):
        self.bridge = bridge
        self.controller = controller
        self.admin_id = str(admin_id or "")
        self.pagination_limit = pagination_limit

    def is_admin(self, user_id: str) -> bool:
        return bool(self.admin_id) and str(user_id) == self.admin_id

    async def __call__(self, msg: ControllerMessage) -> None:
        """Handle a message and send the reply back."""
        try:
            reply = await self.handle_incoming(msg)
        except BridgeError as e:
            logger.error(f"Command failed for {msg.sender_id}: {e}")
            reply = "⚠️ Something went wrong, please try again."
        if reply:
            await self.controller.send_message(msg.chat_id, reply)

    async def handle_incoming(self, msg: ControllerMessage) -> str | None:
        text = msg.text.strip()
        user_id = msg.sender_id

        if msg.is_callback:
            return await self._handle_callback(msg)

        command, _, arg = text.partition(" ")
        command = command.split("@", 1)[0].lower()  # /link@MyBot
        arg = arg.strip()

        if command == "/start":
            return await self._start(msg)

        if command == "/verify":
            if not arg:
                return "Usage: /verify <passkey>"
            if self.bridge.verify(user_id, arg):
                return "✅ Access granted! Send /link to link a WhatsApp number."
            return "❌ Invalid passkey."

        if command == "/help":
            return self._help(user_id)

        if command == "/pending" and self.is_admin(user_id):
            await self._list_pending(msg.chat_id)
            return None

        if command == "/revoke" and self.is_admin(user_id):
            if not arg:
                return "Usage: /revoke <owner id>"
            try:
                accounts = await self.bridge.revoke_owner(arg)
            except NotFoundError:
                return f"No owner {arg}."
            await self.controller.notify(arg, "⛔ Your access was revoked by admin.")
            return f"Owner {arg} removed. Unlinked: {', '.join(accounts) or 'none'}"

        if not command.startswith("/"):
            return None

        # Everything below needs a verified owner
        if not self.bridge.is_verified(user_id):
            return "❌ You are not authorized."

        if command == "/link":
            number = arg or await self.controller.prompt_once(
                user_id, "Send the WhatsApp number to link (with country code):",
            )
            if not number:
                return "⌛ No number received. Send /link to try again."
            return await self.bridge.link_account(user_id, number)

        if command == "/unlink":
            number = arg or await self._choose_account(
                user_id, "Select the WhatsApp number to unlink:")
            if not number:
                return None
            return await self.bridge.unlink_account(user_id, number)

        if command == "/view":
            number = await self._choose_account(
                user_id, "Select a number to view deleted messages:")
            if number:
                await self._send_page(user_id, number, 1)
            return None

        if command == "/status":
            return self._status(user_id)

        return "Unknown command. Send /help for the list."

    # ── Command helpers ──────────────────────────

    async def _start(self, msg: ControllerMessage) -> str:
        user_id = msg.sender_id
        if self.is_admin(user_id):
            return "Welcome Admin!"
        if self.bridge.is_verified(user_id):
            return "You already have access."

        status = self.bridge.link_store.status(user_id)
        if status == OwnerStatus.AUTHORIZED:
            return "Your request was granted. Send /verify <passkey> to unlock access."
        if not self.admin_id:
            return "Admin not set. Wait until admin approves."
        if not self.bridge.request_access(user_id):
            return "⏳ Your request is still pending."

        await self.controller.send_message(
            self.admin_id,
            f"New user request from @{msg.sender_name or user_id} ({user_id})\nGrant / Ignore?",
            buttons=[[
                {"text": "Grant", "callback_data": f"grant:{user_id}"},
                {"text": "Ignore", "callback_data": f"ignore:{user_id}"},
            ]],
        )
        return "✅ Your request has been sent to admin."

    async def _choose_account(self, owner: str, prompt: str) -> str | None:
        accounts = self.bridge.linked_accounts(owner)
        if not accounts:
            await self.controller.notify(owner, "No linked WhatsApp numbers.")
            return None
        return await self.controller.present_choices(owner, prompt, accounts)

    async def _send_page(self, owner: str, account: str, page: int) -> None:
        artifacts = self.bridge.list_artifacts(owner, account)
        if not artifacts:
            await self.controller.notify(owner, f"No deleted messages for {account}.")
            return

        current = paginate(artifacts, page, self.pagination_limit)
        for artifact in current.items:
            await self.controller.send_artifact(owner, artifact)

        footer = f"Page {current.page}/{current.total_pages} · {len(artifacts)} messages"
        if current.page < current.total_pages:
            await self.controller.send_message(owner, footer, buttons=[[{
                "text": "More ▶",
                "callback_data": f"view:{account}:{current.page + 1}",
            }]])
        else:
            await self.controller.send_message(owner, footer)

    async def _list_pending(self, chat_id: str) -> None:
        pending = self.bridge.link_store.list_pending_owners()
        if not pending:
            await self.controller.send_message(chat_id, "No pending requests.")
            return
        for owner in pending:
            await self.controller.send_message(
                chat_id, f"Pending request from {owner}",
                buttons=[[
                    {"text": "Grant", "callback_data": f"grant:{owner}"},
                    {"text": "Ignore", "callback_data": f"ignore:{owner}"},
                ]],
            )

    def _status(self, owner: str) -> str:
        sessions = self.bridge.session_status(owner)
        linked = self.bridge.link_store.list_linked(owner)
        lines = ["📱 *Your numbers*\n"]
        seen = set()
        for s in sessions:
            seen.add(s["account"])
            lines.append(f"{STATE_ICONS.get(s['state'], '❓')} {s['account']} ({s['state']})")
        for account in linked:
            if account not in seen:
                lines.append(f"⚪ {account} (not connected)")
        if len(lines) == 1:
            lines.append("No linked WhatsApp numbers. Send /link to add one.")
        return "\n".join(lines)

    def _help(self, user_id: str) -> str:
        text = (
            "🤖 *Commands*\n\n"
            "/start — Request access\n"
            "/verify <passkey> — Unlock access\n"
            "/link — Link a WhatsApp number\n"
            "/unlink — Unlink a WhatsApp number\n"
            "/view — View deleted messages\n"
            "/status — Your linked numbers"
        )
        if self.is_admin(user_id):
            text += "\n\n🛡 *Admin*\n/pending — Pending requests\n/revoke <owner> — Remove an owner"
        return text

    # ── Button presses ──────────────────────────

    async def _handle_callback(self, msg: ControllerMessage) -> str | None:
        action, _, rest = msg.text.partition(":")

        if action in ("grant", "ignore"):
            if not self.is_admin(msg.sender_id):
                return None
            owner = rest
            if action == "grant":
                passkey = self.bridge.grant(owner)
                if passkey is None:
                    outcome = "Request not found (already handled?)."
                else:
                    await self.controller.notify(
                        owner,
                        f"Your passkey: {passkey}\nSend /verify {passkey} to unlock access.",
                    )
                    outcome = "✅ User granted passkey."
            else:
                self.bridge.deny(owner)
                await self.controller.notify(owner, "❌ Your request was ignored by admin.")
                outcome = "User ignored."
            if msg.message_id:
                await self.controller.edit_message_text(msg.chat_id, msg.message_id, outcome)
                return None
            return outcome

        if action == "view":
            account, _, page = rest.rpartition(":")
            if not account or not page.isdigit():
                return None
            if not self.bridge.is_verified(msg.sender_id):
                return None
            if account not in self.bridge.linked_accounts(msg.sender_id):
                return f"{account} is not linked."
            await self._send_page(msg.sender_id, account, int(page))
            return None

        return None
