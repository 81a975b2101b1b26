"""
CoreBot - Multi-Platform Chat Bot

Entry point. Every mode builds one BotHost (bus, agent, subagents, scheduler,
skills, senders) from config.yaml and differs only in what runs in front.

Usage:
    python main.py              # CLI chat (default)
    python main.py cli          # Same as above
    python main.py channels     # All enabled platform listeners, CLI included
    python main.py serve        # API server only (port from config, default 8000)
    python main.py serve 8080   # API server on a custom port
    python main.py all          # API server + all listeners
    python main.py all 8080

Configuration:
    config.yaml in the current directory, or the file named by COREBOT_CONFIG.

Verbose Output:
    COREBOT_VERBOSE=0|1|2 (off|light|deep), or /verbose in the CLI.
"""

import asyncio
import logging
import logging.handlers
import sys
from pathlib import Path

from config import ConfigValidationError, CoreBotConfig, LoggingConfig, load_config
from utils.console import console

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
USAGE = "Usage: python main.py [cli|channels|serve|all] [port]"


def configure_logging(config: LoggingConfig):
    """Root handler on stderr, optional rotating log file, quiet noisy libraries."""
    formatter = logging.Formatter(config.format)
    level = getattr(logging, config.level, logging.INFO)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(config.file, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.setLevel(level)
    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def main():
    """Main entry point."""
    command = sys.argv[1] if len(sys.argv) > 1 else "cli"
    if command not in ("cli", "channels", "serve", "all"):
        console.error(f"Unknown command: {command}")
        console.system(USAGE)
        sys.exit(1)

    try:
        config = load_config()
    except ConfigValidationError as e:
        for problem in e.problems:
            console.error(problem)
        sys.exit(1)

    configure_logging(config.logging)
    port = int(sys.argv[2]) if len(sys.argv) > 2 else config.server.port

    try:
        if command == "cli":
            asyncio.run(run_cli_only(config))
        elif command == "channels":
            asyncio.run(run_channels(config))
        elif command == "serve":
            run_server(config, port)
        else:
            asyncio.run(run_channels(config, port=port))
    except KeyboardInterrupt:
        console.system("\nGoodbye!")


def _build_host(config: CoreBotConfig):
    from host import BotHost
    from listeners.cli import setup_event_handlers

    host = BotHost(config)
    setup_event_handlers(host.agent, host.scheduler, host.subagents)
    return host


async def run_cli_only(config: CoreBotConfig):
    """Terminal chat; other listeners stay off."""
    from listeners.cli import run_cli_listener

    console.banner(f"CoreBot v{VERSION}")
    host = _build_host(config)
    await host.start(listeners=False)
    try:
        await run_cli_listener(host.bus)
    finally:
        await host.stop()


async def run_channels(config: CoreBotConfig, port: int = None):
    """All enabled listeners, plus the API server when ``port`` is given."""
    from listeners.cli import run_cli_listener

    mode = "Full Mode (Server + Platforms)" if port else "Multi-Platform Mode"
    console.banner(f"CoreBot v{VERSION} - {mode}")
    host = _build_host(config)
    await host.start()

    foreground = []
    if port:
        import uvicorn
        from server import create_app

        server = uvicorn.Server(uvicorn.Config(
            create_app(host, manage_lifecycle=False),
            host=config.server.host,
            port=port,
            log_level="warning",
        ))
        foreground.append(server.serve())
        console.system(f"API server: http://{config.server.host}:{port}")

    console.system(f"Active platforms: {', '.join(config.enabled_platforms())}")
    if config.is_platform_enabled("cli"):
        foreground.append(run_cli_listener(host.bus))
    else:
        console.system("Press Ctrl+C to stop\n")
        foreground.append(asyncio.Event().wait())

    try:
        # First foreground task to finish (CLI quit, server exit) ends the run
        tasks = [asyncio.create_task(coro) for coro in foreground]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if task.exception():
                logger.error("Foreground task failed: %s", task.exception())
    finally:
        await host.stop()


def run_server(config: CoreBotConfig, port: int):
    """API server only; the app starts and stops the host."""
    import uvicorn
    from host import BotHost
    from server import create_app

    console.banner(f"CoreBot v{VERSION} - API Server")
    app = create_app(BotHost(config))
    uvicorn.run(app, host=config.server.host, port=port)


if __name__ == "__main__":
    main()
