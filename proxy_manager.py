# proxy_manager.py

"""
Proxy Manager.
Owns the configuration and the process-wide log sink, and bridges the
level/message callback used by the proxy core into the logging package.
"""

import asyncio
import logging
import os
from typing import Optional, Any, Callable

import proxy_core
from structures import ProxyConfig
from proxy_common import StartupConfigurationError

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y/%m/%d %H:%M:%S"

log = logging.getLogger("ProxyManager")

def configure_log_sink(path: Optional[str], level: int = logging.INFO) -> logging.Handler:
    """
    Attaches an append-only file handler (created if absent) to the root logger.
    logging serializes each record under the handler lock, so concurrent
    requests never interleave partial lines.
    """
    if not path:
        raise StartupConfigurationError("Log file path is required")

    handler = logging.FileHandler(path, mode='a', encoding='utf-8')
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)
    log.info("Logging to a file %s", os.path.abspath(path))
    return handler

class ProxyManager:
    def __init__(
        self,
        config: Optional[ProxyConfig] = None,
        external_callback: Optional[Callable[[str, Any], None]] = None
    ):
        self.config = config or ProxyConfig()
        self.external_callback = external_callback
        self.count = 0
        self.stop_event = asyncio.Event()
        self.proxy_task: Optional[asyncio.Task] = None

    def unified_callback(self, level: str, msg: object) -> None:
        if level == "REQUEST":
            self.count += 1
            log.info(f"[REQUEST] #{self.count} {msg}")
        elif level in ("DECISION", "UPSTREAM"):
            log.info(f"[{level}] {msg}")
        elif level == "SYSTEM":
            log.info(f"[SYSTEM] {msg}")
        elif level == "ERROR":
            log.error(f"[ERROR] {msg}")
        else:
            log.debug(f"[{level}] {msg}")

        if self.external_callback:
            try:
                self.external_callback(level, msg)
            except Exception: # pylint: disable=broad-exception-caught
                log.exception("External callback failed")

    async def run(self) -> None:
        log.info("=== Starting Proxy Manager ===")
        if self.config.forwarding_enabled:
            log.info("Forwarding enabled (upstream timeout: %s)", self.config.upstream_timeout)

        self.proxy_task = asyncio.create_task(
            proxy_core.start_proxy_server(self.config, self.unified_callback)
        )
        stop_waiter = asyncio.create_task(self.stop_event.wait())
        try:
            await asyncio.wait(
                {self.proxy_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_waiter.cancel()
            if not self.proxy_task.done():
                self.proxy_task.cancel()
                await asyncio.gather(self.proxy_task, return_exceptions=True)
            elif not self.proxy_task.cancelled():
                # Surfaces bind failures such as an occupied port
                self.proxy_task.result()

    def stop(self) -> None:
        self.stop_event.set()
