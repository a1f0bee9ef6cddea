"""Discord runtime for the identity verification gateway.

``bots.config`` reads the environment and ``bots.verification`` wires the
``idverify_bot`` services to a Discord client and the webhook server.
"""

__all__ = ["config", "verification"]
