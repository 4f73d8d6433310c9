"""Session lifecycle management.

SessionManager creates one protocol connection per (owner, account),
drives the handle's state machine from connection events, and keeps the
link registry, the credential vault and the archive in step with it.

Close policy: every close, whatever the cause (logout, protocol error,
flaky network), is treated as a deliberate unlink. The handle leaves
the registry, the link record is removed, and the pair's archive and
credentials are purged. Nothing reconnects on its own; the owner has to
link again. The one exception is process shutdown, which releases
connections without touching durable state so recovery can pick the
links up on the next start.
"""

import logging
from functools import partial

from vanishbridge.capture import CaptureInterceptor
from vanishbridge.controller.base import ControllerChannel
from vanishbridge.errors import StorageError
from vanishbridge.protocol.base import ProtocolClient, ProtocolEvent, ProtocolEventType
from vanishbridge.sessions.handle import SessionHandle, SessionState
from vanishbridge.sessions.registry import SessionRegistry
from vanishbridge.store.archive import ArtifactArchive
from vanishbridge.store.links import LinkStore
from vanishbridge.store.vault import CredentialVault

logger = logging.getLogger(__name__)


class SessionManager:
    """Owns the lifecycle of every live session."""

    def __init__(
        self,
        registry: SessionRegistry,
        link_store: LinkStore,
        vault: CredentialVault,
        archive: ArtifactArchive,
        protocol: ProtocolClient,
        controller: ControllerChannel,
        interceptor: CaptureInterceptor | None = None,
    ):
        self.registry = registry
        self.link_store = link_store
        self.vault = vault
        self.archive = archive
        self.protocol = protocol
        self.controller = controller
        self.interceptor = interceptor or CaptureInterceptor(archive)

    # ── Public operations ─────────────────────────

    async def create(self, owner: str, account: str) -> SessionHandle:
        """Start a session for the pair. Progress is reported through events.

        A live handle for the same pair is returned as-is.
        """
        existing = self.registry.get(owner, account)
        if existing is not None and not existing.is_closed:
            return existing

        handle = self.registry.add(SessionHandle(owner=owner, account=account))
        credentials = self.vault.load(owner, account)
        logger.info(
            f"Starting session {account} (owner: {owner}, "
            f"credentials: {'yes' if credentials else 'no'})"
        )

        try:
            handle.connection = await self.protocol.connect(
                owner, account, credentials, partial(self._dispatch, handle),
            )
        except Exception as e:
            logger.error(f"Connect failed for {account} (owner: {owner}): {e}")
            await self._close(handle, "connect_failed")
        return handle

    async def terminate(self, owner: str, account: str) -> bool:
        """Log the pair out and run the close path. False if nothing to do or logout failed."""
        handle = self.registry.get(owner, account)
        if handle is None or handle.is_closed:
            return False

        if handle.connection is not None:
            try:
                await handle.connection.logout()
            except Exception as e:
                logger.error(f"Failed to unlink {account} (owner: {owner}): {e}")
                return False

        await self._close(handle, "logout")
        logger.info(f"Session unlinked: {account} (owner: {owner})")
        return True

    def is_linked(self, owner: str, account: str) -> bool:
        handle = self.registry.get(owner, account)
        return bool(handle and handle.linked)

    def list_linked_accounts(self, owner: str) -> list[str]:
        return [h.account for h in self.registry.for_owner(owner) if h.linked]

    def pending_count(self, owner: str) -> int:
        """Sessions for the owner still pairing or connecting that hold no link record yet.

        A recovered pair waiting to re-pair already has its record and is
        counted through the store, not here.
        """
        persisted = set(self.link_store.list_linked(owner))
        return sum(
            1 for h in self.registry.for_owner(owner)
            if not h.linked and not h.is_closed and h.account not in persisted
        )

    async def discard(self, owner: str, account: str, reason: str) -> bool:
        """Run the close path for a live pair without logging it out first."""
        handle = self.registry.get(owner, account)
        if handle is None or handle.is_closed:
            return False
        await self._close(handle, reason)
        return True

    async def shutdown(self) -> None:
        """Release every connection without unlinking anything."""
        for handle in self.registry.all():
            handle.enter(SessionState.CLOSED)
            handle.close_reason = "shutdown"
            self.registry.remove(handle.owner, handle.account, handle)
            if handle.connection is not None:
                try:
                    await handle.connection.close()
                except Exception as e:
                    logger.warning(f"Error closing {handle.account} on shutdown: {e}")
        await self.protocol.close()

    # ── Event handling ───────────────────────────

    async def _dispatch(self, handle: SessionHandle, event: ProtocolEvent) -> None:
        """Entry point for all events of one connection, in arrival order."""
        if handle.is_closed:
            return
        try:
            if event.type == ProtocolEventType.PAIRING_CHALLENGE:
                await self._on_pairing(handle, event.challenge or "")
            elif event.type == ProtocolEventType.CREDENTIALS_UPDATED:
                self._on_credentials(handle, event.credentials or {})
            elif event.type == ProtocolEventType.CONNECTION_OPENED:
                await self._on_open(handle)
            elif event.type == ProtocolEventType.CONNECTION_CLOSED:
                await self._close(handle, event.reason or "unknown")
            elif event.type == ProtocolEventType.MESSAGE_RECEIVED and event.message:
                await self._on_message(handle, event)
        except Exception as e:
            logger.error(
                f"Error handling {event.type.value} for {handle.account} "
                f"(owner: {handle.owner}): {e}"
            )

    async def _on_pairing(self, handle: SessionHandle, challenge: str) -> None:
        if not handle.enter(SessionState.AWAITING_PAIRING):
            return
        if challenge == handle.last_challenge:
            return
        handle.last_challenge = challenge
        logger.info(f"Pairing challenge issued for {handle.account} (owner: {handle.owner})")
        await self.controller.notify(
            handle.owner,
            f"🔗 Pairing code for {handle.account}: {challenge}\n\n"
            "On that phone open WhatsApp → Linked devices → "
            "Link a device → Link with phone number instead, and enter the code.",
        )

    def _on_credentials(self, handle: SessionHandle, credentials: dict) -> None:
        try:
            self.vault.save(handle.owner, handle.account, credentials)
        except StorageError as e:
            logger.error(f"Could not save credentials for {handle.account}: {e}")

    async def _on_open(self, handle: SessionHandle) -> None:
        if not handle.enter(SessionState.OPEN):
            return
        handle.linked = True

        try:
            persisted = self.link_store.link_account(handle.owner, handle.account)
        except StorageError as e:
            logger.error(f"Could not persist link for {handle.account}: {e}")
            persisted = False

        if not persisted:
            logger.warning(
                f"Link refused for {handle.account} (owner: {handle.owner}); logging out")
            await self.controller.notify(
                handle.owner,
                f"❌ WhatsApp number {handle.account} could not be linked "
                "(limit reached, not authorized, or storage error).",
            )
            if not await self.terminate(handle.owner, handle.account):
                await self._close(handle, "link_refused")
            return

        logger.info(f"Session linked: {handle.account} (owner: {handle.owner})")
        await self.controller.notify(
            handle.owner, f"✅ WhatsApp number {handle.account} linked successfully!",
        )

    async def _on_message(self, handle: SessionHandle, event: ProtocolEvent) -> None:
        if handle.state != SessionState.OPEN or handle.connection is None:
            logger.debug(f"Dropping message for {handle.account} in state {handle.state.value}")
            return
        await self.interceptor.handle(
            handle.owner, handle.account, handle.connection, event.message,
        )

    async def _close(self, handle: SessionHandle, reason: str) -> None:
        """The CLOSED transition. Safe to call more than once."""
        if not handle.enter(SessionState.CLOSED):
            return
        handle.close_reason = reason
        handle.linked = False
        owner, account = handle.key
        logger.info(f"Session closed: {account} (owner: {owner}) Reason: {reason}")

        self.registry.remove(owner, account, handle)
        try:
            self.link_store.unlink_account(owner, account)
        except StorageError as e:
            logger.error(f"Could not remove link record for {account}: {e}")
        self.archive.purge(owner, account)
        self.vault.purge(owner, account)

        if handle.connection is not None:
            try:
                await handle.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection for {account}: {e}")

        await self.controller.notify(
            owner, f"⚠️ WhatsApp number {account} was unlinked ({reason}).",
        )
