"""Startup reconciliation of the link registry with live sessions.

Every (owner, account) link of every authorized owner gets a session.
Pairs with saved credentials reconnect without a pairing challenge;
pairs whose credentials are gone go back to pairing (the link record
and the vault can drift apart if the vault is cleared by hand).
"""

import logging
from dataclasses import dataclass, field

from vanishbridge.sessions.manager import SessionManager
from vanishbridge.store.links import LinkStore

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    started: list[tuple[str, str]] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    needs_pairing: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.started) + len(self.failed)


class RecoveryOrchestrator:

    def __init__(self, link_store: LinkStore, manager: SessionManager):
        self.link_store = link_store
        self.manager = manager

    async def recover(self) -> RecoveryReport:
        """Start a session for every persisted link. One failure never stops the rest."""
        report = RecoveryReport()

        try:
            owners = self.link_store.list_authorized_owners()
        except Exception as e:
            logger.error(f"Recovery aborted, link registry unreadable: {e}")
            return report

        for owner in owners:
            for account in self.link_store.list_linked(owner):
                pair = (owner, account)
                try:
                    has_credentials = self.manager.vault.exists(owner, account)
                    handle = await self.manager.create(owner, account)
                    if handle.is_closed:
                        logger.error(
                            f"Failed to recover {account} (owner: {owner}): "
                            f"{handle.close_reason}"
                        )
                        report.failed.append(pair)
                        continue
                    report.started.append(pair)
                    if not has_credentials:
                        report.needs_pairing.append(pair)
                except Exception as e:
                    logger.error(f"Failed to recover {account} (owner: {owner}): {e}")
                    report.failed.append(pair)

        logger.info(
            f"Recovery finished: {len(report.started)} started, "
            f"{len(report.failed)} failed, {len(report.needs_pairing)} need pairing"
        )
        return report
