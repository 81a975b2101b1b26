"""
CLI Sender - Replies printed to the terminal with styled formatting.
"""

from utils.console import console


class CLISender:
    """Sender for platform "cli"."""

    name = "cli"
    capabilities = ["text_only"]

    def __init__(self, prefix: str = "CoreBot"):
        self.prefix = prefix

    async def send(self, to: str, content: str, **kwargs) -> dict:
        """Print the reply. ``to`` is ignored, there is only one terminal."""
        console.agent(content, prefix=self.prefix)
        return {"sent": True, "channel": "cli"}
