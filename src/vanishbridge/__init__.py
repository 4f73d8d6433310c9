"""VanishBridge - send-and-vanish WhatsApp bridge with a private archive.

An approved operator links WhatsApp accounts from a Telegram chat. Every
message a linked account sends is revoked for all recipients and a copy
is archived for the operator.

Modules:
    - store: link registry, credential vault, artifact archive
    - protocol: messaging protocol contract + Green API driver
    - sessions: live session handles, registry, lifecycle, recovery
    - capture: revoke-then-archive interceptor
    - controller: Telegram controller channel and operator commands
    - bridge: operations exposed to the controller channel
    - runtime: process startup, single-instance lock, shutdown
"""

__version__ = "0.3.0"
