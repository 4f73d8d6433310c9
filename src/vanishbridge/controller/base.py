"""Controller channel contract.

The controller channel is how operators talk to the bridge. The session
layer only needs `notify`; the command router also uses the prompting
helpers and artifact delivery.
"""

from abc import ABC, abstractmethod

from vanishbridge.store.archive import CapturedArtifact


class ControllerChannel(ABC):

    @abstractmethod
    async def notify(self, owner: str, text: str) -> bool:
        """Send a plain message to the owner. Returns True on success."""
        ...

    @abstractmethod
    async def prompt_once(self, owner: str, text: str) -> str | None:
        """Ask the owner something and wait for their next reply."""
        ...

    @abstractmethod
    async def present_choices(
        self, owner: str, text: str, choices: list[str]
    ) -> str | None:
        """Offer a list of choices; returns the chosen one, or None."""
        ...

    @abstractmethod
    async def send_artifact(self, owner: str, artifact: CapturedArtifact) -> bool:
        """Deliver an archived artifact to the owner."""
        ...
