"""Entrypoint for the Casambi cloud bridge."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Iterable, Optional

from .api import ApiService
from .bridge import CasambiBridge
from .config import Config, load_config
from .logging import configure_logging, get_logger


async def _run_async(config: Config) -> None:
    logger = get_logger("casambi")
    stop_event = asyncio.Event()

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    bridge = CasambiBridge(config)
    api: Optional[ApiService] = ApiService(config, bridge) if config.api_enabled else None
    await bridge.start()
    if api is not None:
        await api.start()
    logger.info(
        "Bridge services started",
        extra={
            "auth_mode": config.auth_mode,
            "api_enabled": config.api_enabled,
            "api_port": config.api_port,
        },
    )

    try:
        await stop_event.wait()
    finally:
        if api is not None:
            await api.stop()
        await bridge.stop()
        logger.info("Bridge shutdown complete")


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("casambi")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
