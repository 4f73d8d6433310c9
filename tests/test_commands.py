"""Operator commands over the controller channel."""

import asyncio

import pytest

from vanishbridge.bridge import Bridge
from vanishbridge.controller.commands import CommandRouter, paginate
from vanishbridge.controller.telegram import ControllerMessage
from vanishbridge.store import PayloadKind

A1 = "+15550000001"


@pytest.fixture
def bridge(link_store, manager):
    return Bridge(link_store, manager, manager.interceptor)


@pytest.fixture
def router(bridge, controller):
    return CommandRouter(bridge, controller, admin_id="ADMIN", pagination_limit=5)


def _msg(sender: str, text: str) -> ControllerMessage:
    return ControllerMessage(chat_id=sender, sender_id=sender, sender_name=sender.lower(), text=text)


def _press(sender: str, data: str, message_id: str = "55") -> ControllerMessage:
    return ControllerMessage(
        chat_id=sender, sender_id=sender, sender_name=sender.lower(),
        text=data, message_id=message_id, is_callback=True,
    )


def _ask(router, sender: str, text: str) -> str | None:
    return asyncio.run(router.handle_incoming(_msg(sender, text)))


class TestPaginate:

    def test_pages(self):
        page = paginate(list(range(12)), page=3, limit=5)
        assert page.items == [10, 11]
        assert page.total_pages == 3

    def test_out_of_range_clamps(self):
        assert paginate([1, 2], page=9, limit=5).page == 1
        assert paginate([], page=1, limit=5).items == []


class TestAccessCommands:

    def test_start_sends_request_to_admin(self, router, controller, link_store):
        reply = _ask(router, "U1", "/start")

        assert "sent to admin" in reply
        assert link_store.list_pending_owners() == ["U1"]
        chat_id, text, buttons = controller.sent[-1]
        assert chat_id == "ADMIN"
        assert "U1" in text
        assert [b["callback_data"] for b in buttons[0]] == ["grant:U1", "ignore:U1"]

        assert "still pending" in _ask(router, "U1", "/start")

    def test_start_for_admin(self, router):
        assert _ask(router, "ADMIN", "/start") == "Welcome Admin!"

    def test_start_without_admin(self, bridge, controller):
        router = CommandRouter(bridge, controller, admin_id="")
        assert "Admin not set" in _ask(router, "U1", "/start")

    def test_grant_verify_round(self, router, controller, link_store):
        _ask(router, "U1", "/start")
        result = asyncio.run(router.handle_incoming(_press("ADMIN", "grant:U1")))

        assert result is None
        assert controller.edited == [("ADMIN", "55", "✅ User granted passkey.")]
        notice = controller.texts_for("U1")[-1]
        passkey = notice.split("\n")[0].removeprefix("Your passkey: ")

        assert "Invalid passkey" in _ask(router, "U1", "/verify nope")
        assert "Access granted" in _ask(router, "U1", f"/verify {passkey}")
        assert link_store.is_verified("U1")
        assert "already have access" in _ask(router, "U1", "/start")

    def test_ignore_denies_request(self, router, controller, link_store):
        _ask(router, "U1", "/start")
        asyncio.run(router.handle_incoming(_press("ADMIN", "ignore:U1")))

        assert link_store.list_pending_owners() == []
        assert "ignored" in controller.texts_for("U1")[-1]

    def test_only_admin_can_grant(self, router, link_store):
        _ask(router, "U1", "/start")
        assert asyncio.run(router.handle_incoming(_press("U2", "grant:U1"))) is None
        assert link_store.list_pending_owners() == ["U1"]

    def test_pending_lists_requests(self, router, controller):
        _ask(router, "U1", "/start")
        _ask(router, "U2", "/start")
        controller.sent.clear()

        _ask(router, "ADMIN", "/pending")
        assert [text for _, text, _ in controller.sent] == [
            "Pending request from U1", "Pending request from U2"]

    def test_unverified_owner_is_refused(self, router):
        assert "not authorized" in _ask(router, "U1", "/link")

    def test_plain_text_is_ignored(self, router, verify_owner):
        verify_owner("U1")
        assert _ask(router, "U1", "hello there") is None


class TestLinkCommands:

    def test_link_prompts_for_number(self, router, controller, protocol, verify_owner):
        verify_owner("U1")
        controller.reply = "+1 555 000 0001"

        async def scenario():
            reply = await router.handle_incoming(_msg("U1", "/link"))
            await protocol.settle()
            return reply

        reply = asyncio.run(scenario())
        assert reply.startswith("⏳ Linking +15550000001")
        assert controller.prompts[0][0] == "U1"
        assert any("Pairing code" in t for t in controller.texts_for("U1"))

    def test_link_with_bot_suffix_and_argument(self, router, protocol, verify_owner):
        verify_owner("U1")

        async def scenario():
            reply = await router.handle_incoming(_msg("U1", f"/link@VanishBot {A1}"))
            await protocol.settle()
            return reply

        assert asyncio.run(scenario()).startswith("⏳ Linking")

    def test_link_prompt_timeout(self, router, controller, verify_owner):
        verify_owner("U1")
        controller.reply = None
        assert "No number received" in _ask(router, "U1", "/link")

    def test_unlink_presents_choices(self, router, controller, link_store, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", A1)
        controller.choice = 0

        assert "unlinked" in _ask(router, "U1", "/unlink")
        assert link_store.list_linked("U1") == []

    def test_unlink_cancelled(self, router, controller, link_store, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", A1)
        controller.choice = None

        assert _ask(router, "U1", "/unlink") is None
        assert link_store.list_linked("U1") == [A1]

    def test_status(self, router, link_store, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", A1)
        assert f"{A1} (not connected)" in _ask(router, "U1", "/status")

    def test_revoke_owner(self, router, controller, link_store, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", A1)

        reply = _ask(router, "ADMIN", "/revoke U1")
        assert A1 in reply
        assert not link_store.is_verified("U1")
        assert "revoked" in controller.texts_for("U1")[-1]

    def test_revoke_unknown_owner(self, router, controller):
        assert _ask(router, "ADMIN", "/revoke U9") == "No owner U9."
        assert controller.texts_for("U9") == []

    def test_help_shows_admin_commands_to_admin(self, router):
        assert "/pending" in _ask(router, "ADMIN", "/help")
        assert "/pending" not in _ask(router, "U1", "/help")


class TestView:

    def test_view_pages_through_artifacts(self, router, controller, link_store, archive, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", A1)
        for i in range(7):
            archive.save("U1", A1, PayloadKind.TEXT, f"msg {i}", timestamp=float(i + 1))
        controller.choice = 0

        assert _ask(router, "U1", "/view") is None
        assert [a.read_text() for _, a in controller.artifacts] == [f"msg {i}" for i in range(5)]
        _, footer, buttons = controller.sent[-1]
        assert footer.startswith("Page 1/2")
        assert buttons[0][0]["callback_data"] == f"view:{A1}:2"

        asyncio.run(router.handle_incoming(_press("U1", f"view:{A1}:2")))
        assert [a.read_text() for _, a in controller.artifacts[5:]] == ["msg 5", "msg 6"]
        _, footer, buttons = controller.sent[-1]
        assert footer.startswith("Page 2/2")
        assert buttons is None

    def test_view_empty(self, router, controller, link_store, verify_owner):
        verify_owner("U1")
        link_store.link_account("U1", A1)
        _ask(router, "U1", "/view")
        assert "No deleted messages" in controller.texts_for("U1")[-1]

    def test_view_of_foreign_account(self, router, verify_owner):
        verify_owner("U1")
        reply = asyncio.run(router.handle_incoming(_press("U1", f"view:{A1}:1")))
        assert "is not linked" in reply


class TestReplies:

    def test_call_sends_reply(self, router, controller):
        asyncio.run(router(_msg("U1", "/help")))
        chat_id, text, _ = controller.sent[-1]
        assert chat_id == "U1"
        assert "/link" in text

    def test_unknown_command(self, router, verify_owner):
        verify_owner("U1")
        assert "Unknown command" in _ask(router, "U1", "/frobnicate")
