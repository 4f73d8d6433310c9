"""Shared fixtures: temp storage plus fake protocol and controller collaborators."""

import asyncio
from typing import Any

import pytest

from vanishbridge.controller.base import ControllerChannel
from vanishbridge.errors import ProtocolError
from vanishbridge.protocol.base import (
    EventHandler,
    ProtocolClient,
    ProtocolConnection,
    ProtocolEvent,
    ProtocolMessage,
)
from vanishbridge.sessions import SessionManager, SessionRegistry
from vanishbridge.store import ArtifactArchive, CredentialVault, LinkStore


class FakeConnection(ProtocolConnection):
    def __init__(self, owner: str, account: str, credentials: dict | None, on_event: EventHandler):
        self.owner = owner
        self.account = account
        self.credentials = credentials
        self.on_event = on_event
        self.revoked: list[tuple[str, str]] = []
        self.logged_out = False
        self.closed = False
        self.fail_revoke = False
        self.fail_logout = False

    async def emit(self, event: ProtocolEvent) -> None:
        await self.on_event(event)

    async def send_self_message(self, message_id: str, text: str, chat: str = "chat-1") -> None:
        await self.emit(ProtocolEvent.received(ProtocolMessage(
            message_id=message_id, conversation_id=chat, from_me=True, text=text,
        )))

    async def revoke_message(self, conversation_id: str, message_id: str) -> None:
        if self.fail_revoke:
            raise ProtocolError("revoke refused")
        self.revoked.append((conversation_id, message_id))

    async def logout(self) -> None:
        if self.fail_logout:
            raise ProtocolError("logout refused")
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True


class FakeProtocol(ProtocolClient):
    """Opens FakeConnections.

    With `auto` on, a connection with credentials reports itself open and
    one without asks for pairing, from a background task like a real driver.
    """

    def __init__(self, auto: bool = True, challenge: str = "ABCD-1234"):
        self.auto = auto
        self.challenge = challenge
        self.connections: dict[tuple[str, str], FakeConnection] = {}
        self.fail_for: set[str] = set()
        self.closed = False
        self._tasks: list[asyncio.Task] = []

    async def connect(self, owner, account, credentials, on_event) -> FakeConnection:
        if account in self.fail_for:
            raise ProtocolError(f"cannot reach {account}")
        conn = FakeConnection(owner, account, credentials, on_event)
        self.connections[(owner, account)] = conn
        if self.auto:
            self._tasks.append(asyncio.create_task(self._boot(conn)))
        return conn

    async def _boot(self, conn: FakeConnection) -> None:
        if conn.credentials is not None:
            await conn.emit(ProtocolEvent.opened())
        else:
            await conn.emit(ProtocolEvent.pairing(self.challenge))

    async def settle(self) -> None:
        """Wait for every scripted event to be delivered."""
        while self._tasks:
            tasks, self._tasks = self._tasks, []
            await asyncio.gather(*tasks)

    async def pair(self, owner: str, account: str) -> FakeConnection:
        """Complete pairing as if the code had been entered on the phone."""
        conn = self.connections[(owner, account)]
        await conn.emit(ProtocolEvent.credentials_updated({"wid": f"{account}@c.us"}))
        await conn.emit(ProtocolEvent.opened())
        return conn

    async def close(self) -> None:
        self.closed = True


class FakeController(ControllerChannel):
    def __init__(self):
        self.notifications: list[tuple[str, str]] = []
        self.sent: list[tuple[str, str, Any]] = []
        self.edited: list[tuple[str, str, str]] = []
        self.artifacts: list[tuple[str, Any]] = []
        self.prompts: list[tuple[str, str]] = []
        self.reply: str | None = None
        self.choice: int | None = 0

    def texts_for(self, owner: str) -> list[str]:
        return [text for who, text in self.notifications if who == owner]

    async def notify(self, owner: str, text: str) -> bool:
        self.notifications.append((owner, text))
        return True

    async def send_message(self, chat_id: str, text: str, buttons=None) -> bool:
        self.sent.append((chat_id, text, buttons))
        return True

    async def edit_message_text(self, chat_id: str, message_id: str, text: str) -> bool:
        self.edited.append((chat_id, message_id, text))
        return True

    async def prompt_once(self, owner: str, text: str) -> str | None:
        self.prompts.append((owner, text))
        return self.reply

    async def present_choices(self, owner: str, text: str, choices: list[str]) -> str | None:
        self.prompts.append((owner, text))
        if self.choice is None or self.choice >= len(choices):
            return None
        return choices[self.choice]

    async def send_artifact(self, owner: str, artifact) -> bool:
        self.artifacts.append((owner, artifact))
        return True


# ── Fixtures ──────────────────────────────────────────────────

@pytest.fixture
def link_store(tmp_path):
    return LinkStore(tmp_path / "data" / "users.json", max_linked_per_owner=3)


@pytest.fixture
def vault(tmp_path):
    return CredentialVault(tmp_path / "credentials")


@pytest.fixture
def archive(tmp_path):
    return ArtifactArchive(tmp_path / "archive")


@pytest.fixture
def protocol():
    return FakeProtocol()


@pytest.fixture
def controller():
    return FakeController()


@pytest.fixture
def manager(link_store, vault, archive, protocol, controller):
    return SessionManager(
        registry=SessionRegistry(),
        link_store=link_store,
        vault=vault,
        archive=archive,
        protocol=protocol,
        controller=controller,
    )


@pytest.fixture
def verify_owner(link_store):
    """Take an owner through request -> grant -> verify."""
    def _verify(owner: str) -> str:
        link_store.request_access(owner)
        passkey = link_store.grant(owner)
        assert link_store.verify(owner, passkey)
        return owner
    return _verify
