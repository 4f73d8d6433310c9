"""Operations the controller channel calls into.

Bridge wires the link registry, the session manager and the archive
together and turns their outcomes into plain-language status messages
for the operator.
"""

import logging
import re

from vanishbridge.capture import CaptureInterceptor
from vanishbridge.config import BridgeSettings
from vanishbridge.controller.base import ControllerChannel
from vanishbridge.errors import (
    AccountInUseError,
    AuthorizationError,
    CapacityError,
    NotFoundError,
    StorageError,
)
from vanishbridge.protocol.base import ProtocolClient
from vanishbridge.sessions import (
    RecoveryOrchestrator,
    RecoveryReport,
    SessionManager,
    SessionRegistry,
)
from vanishbridge.store import (
    ArtifactArchive,
    CapturedArtifact,
    CredentialVault,
    LinkStore,
    OwnerStatus,
)

logger = logging.getLogger(__name__)

_ACCOUNT_RE = re.compile(r"^\+?\d{6,15}$")


def normalize_account(raw: str) -> str:
    """'+1 (555) 123-4567' -> '+15551234567'. Raises ValueError if it isn't a number."""
    text = raw.strip()
    cleaned = ("+" if text.startswith("+") else "") + "".join(c for c in text if c.isdigit())
    if not _ACCOUNT_RE.match(cleaned):
        raise ValueError(f"Not a phone number: {raw!r}")
    return cleaned


class Bridge:
    """Facade over the link registry and live sessions."""

    def __init__(
        self,
        link_store: LinkStore,
        manager: SessionManager,
        interceptor: CaptureInterceptor,
    ):
        self.link_store = link_store
        self.manager = manager
        self.interceptor = interceptor
        self.recovery = RecoveryOrchestrator(link_store, manager)

    @classmethod
    def from_settings(
        cls,
        settings: BridgeSettings,
        protocol: ProtocolClient,
        controller: ControllerChannel,
    ) -> "Bridge":
        link_store = LinkStore(
            settings.links_file,
            max_linked_per_owner=settings.limits.max_linked_accounts_per_owner,
            passkey_length=settings.bot.passkey_length,
        )
        archive = ArtifactArchive(settings.archive_dir)
        interceptor = CaptureInterceptor(archive)
        manager = SessionManager(
            registry=SessionRegistry(),
            link_store=link_store,
            vault=CredentialVault(settings.credentials_dir),
            archive=archive,
            protocol=protocol,
            controller=controller,
            interceptor=interceptor,
        )
        return cls(link_store, manager, interceptor)

    async def start(self) -> RecoveryReport:
        return await self.recovery.recover()

    async def stop(self) -> None:
        await self.manager.shutdown()

    # ── Access ───────────────────────────────────

    def is_verified(self, owner: str) -> bool:
        return self.link_store.is_verified(owner)

    def request_access(self, owner: str) -> bool:
        return self.link_store.request_access(owner)

    def grant(self, owner: str) -> str | None:
        return self.link_store.grant(owner)

    def deny(self, owner: str) -> bool:
        return self.link_store.deny(owner)

    def verify(self, owner: str, passkey: str) -> bool:
        return self.link_store.verify(owner, passkey)

    async def revoke_owner(self, owner: str) -> list[str]:
        """Unlink every account of an owner and forget them.

        A pair whose logout fails is still closed locally, so nothing keeps
        capturing for an owner that no longer exists.
        """
        live = self.manager.registry.for_owner(owner)
        if self.link_store.status(owner) == OwnerStatus.UNAUTHORIZED and not live:
            raise NotFoundError(f"No owner {owner}", context={"owner": owner})

        accounts = set(self.link_store.list_linked(owner))
        accounts.update(h.account for h in live)
        for account in accounts:
            if await self.manager.terminate(owner, account):
                continue
            if not await self.manager.discard(owner, account, "owner_revoked"):
                self._purge_pair(owner, account)
        self.link_store.remove_owner(owner)
        logger.info(f"Owner {owner} removed ({len(accounts)} accounts unlinked)")
        return sorted(accounts)

    # ── Linking ──────────────────────────────────

    async def link_account(self, owner: str, raw_account: str) -> str:
        """Start linking an account. Returns a status message for the owner."""
        if not self.is_verified(owner):
            return "❌ You are not authorized."
        try:
            account = normalize_account(raw_account)
        except ValueError:
            return "❌ That doesn't look like a phone number. Include the country code, e.g. +15551234567."

        handle = self.manager.registry.get(owner, account)
        if handle is not None and not handle.is_closed:
            if handle.linked:
                return f"ℹ️ {account} is already linked."
            return f"⏳ {account} is already waiting for pairing."

        other = self.manager.registry.owner_of(account)
        if other is not None and other != owner:
            return f"❌ {account} is already linked by someone else."

        try:
            self.link_store.ensure_can_link(
                owner, account, reserved=self.manager.pending_count(owner),
            )
        except AuthorizationError:
            return "❌ You are not authorized."
        except AccountInUseError:
            return f"❌ {account} is already linked by someone else."
        except CapacityError:
            return (
                f"❌ You already have the maximum of "
                f"{self.link_store.max_linked_per_owner} linked numbers."
            )

        handle = await self.manager.create(owner, account)
        if handle.is_closed:
            return f"❌ Could not start a session for {account}."
        if handle.linked:
            return f"✅ {account} linked."
        return f"⏳ Linking {account}... watch for the pairing code."

    async def unlink_account(self, owner: str, raw_account: str) -> str:
        """Log an account out and wipe its data. Returns a status message."""
        if not self.is_verified(owner):
            return "❌ You are not authorized."
        try:
            account = normalize_account(raw_account)
        except ValueError:
            return "❌ That doesn't look like a phone number."

        if await self.manager.terminate(owner, account):
            return f"✅ {account} unlinked."
        if self.manager.registry.get(owner, account) is not None:
            return f"❌ Failed to unlink {account}. Try again later."

        # No live session: clear whatever is left on disk.
        if account in self.link_store.list_linked(owner):
            self._purge_pair(owner, account)
            return f"✅ {account} unlinked."
        return f"ℹ️ {account} is not linked."

    def _purge_pair(self, owner: str, account: str) -> None:
        try:
            self.link_store.unlink_account(owner, account)
        except StorageError as e:
            logger.error(f"Could not remove link record for {account}: {e}")
        self.manager.archive.purge(owner, account)
        self.manager.vault.purge(owner, account)

    # ── Viewing ──────────────────────────────────

    def linked_accounts(self, owner: str) -> list[str]:
        """Accounts the owner can view: persisted links plus live ones."""
        accounts = self.link_store.list_linked(owner)
        for account in self.manager.list_linked_accounts(owner):
            if account not in accounts:
                accounts.append(account)
        return accounts

    def list_artifacts(self, owner: str, account: str) -> list[CapturedArtifact]:
        """Archived artifacts for the pair, oldest first.

        A pair with no link record has nothing archived; its archive went
        with the unlink.
        """
        if not self.is_verified(owner):
            raise AuthorizationError(f"Owner {owner} is not authorized")
        if account not in self.linked_accounts(owner):
            return []
        return self.interceptor.list_artifacts(owner, account)

    def session_status(self, owner: str) -> list[dict]:
        return [h.to_dict() for h in self.manager.registry.for_owner(owner)]
