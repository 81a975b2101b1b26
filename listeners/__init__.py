"""
Listeners - Input channels for the bot.

Listeners receive messages from a chat platform and publish them to the bus
as UserMessage values. Each listener is a plain async function (or a small
class with ``run()``) that loops until cancelled:

1. Wait for input from its platform
2. Build a UserMessage (platform name + platform user id)
3. ``await bus.publish(message)``

Replies never flow back through the listener; the outbound dispatcher
delivers them through the sender for the same platform.

Usage:
    from listeners import run_cli_listener, run_telegram_listener

    await asyncio.gather(
        run_cli_listener(bus),
        run_telegram_listener(bus, config.platform("telegram")),
    )

WhatsApp and Feishu are inbound over HTTP, see the webhook routes in server.py.
"""

from listeners.cli import run_cli_listener
from listeners.telegram import run_telegram_listener

__all__ = ["run_cli_listener", "run_telegram_listener"]
