"""Controller channel: how operators drive the bridge.

Only the contract is exported here; the Telegram implementation and the
command router are imported from their modules directly.
"""

from vanishbridge.controller.base import ControllerChannel

__all__ = ["ControllerChannel"]
