#!/usr/bin/env python3
"""Semantic Bridge CLI - headless bridge between the federation relay and Ollama.

Usage:
    semantic-bridge
    semantic-bridge --federation-host relay.local --federation-port 8810
    semantic-bridge --ollama-url http://gpu-box:11434 --model llama3

Environment variables (alternative to args):
    FEDERATION_HOST   Relay host (default: localhost)
    FEDERATION_PORT   Relay port (default: 8810)
    BRIDGE_PORT       Health/stats HTTP port (default: 8811)
    OLLAMA_URL        Backend base URL (default: http://localhost:11434)
    SEMANTIC_MODEL    Default model (default: mistral)
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any, Optional

from dotenv import load_dotenv

from .cache import ResponseCache
from .config import load_config
from .generation import GenerationClient
from .relay import RelayConnectError, RelayLink
from .router import RequestRouter
from .stats import StatsReporter

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
log = logging.getLogger("semantic_bridge")


class FatalStartupError(Exception):
    """Bootstrap failed; the process should exit non-zero."""


class SemanticBridge:
    """Wires the backend client, cache, relay link, router and stats together."""

    def __init__(
        self,
        config: dict,
        client: Optional[GenerationClient] = None,
        link: Optional[RelayLink] = None,
    ):
        self.config = config
        self.client = client or GenerationClient(
            config["OLLAMA_URL"],
            config["SEMANTIC_MODEL"],
            timeout=config["OLLAMA_TIMEOUT"],
        )
        self.cache = ResponseCache(capacity=config["CACHE_CAPACITY"])
        self.link = link or RelayLink(
            config["FEDERATION_HOST"],
            config["FEDERATION_PORT"],
            reconnect_delay=config["RECONNECT_DELAY"],
            backoff=config["RECONNECT_BACKOFF"],
            max_reconnect_delay=config["MAX_RECONNECT_DELAY"],
            log_callback=self._log,
        )
        self.router = RequestRouter(self.client, self.cache, self.link)
        self.link.on_message(self.router.handle_message)
        self.stats = StatsReporter(
            self.router.get_stats,
            interval=config["STATS_INTERVAL"],
            log_callback=self._log,
        )

        self._stop: asyncio.Event | None = None
        self._server_task: asyncio.Task | None = None

    def _log(self, message: str, level: str = "info"):
        if level == "error":
            log.error(message)
        elif level == "warn":
            log.warning(message)
        else:
            log.info(message)

    def get_response(self, request_id: str):
        return self.router.get_response(request_id)

    def get_stats(self) -> dict[str, Any]:
        return self.router.get_stats()

    async def initialize(self) -> None:
        """Probe the backend, then connect to the relay.

        Raises:
            FatalStartupError: if the initial relay handshake fails.
        """
        log.info("Initializing Semantic Bridge...")
        ollama_url = self.config["OLLAMA_URL"]

        if not await self.client.is_available():
            log.warning(f"Ollama not available at {ollama_url}. Starting in offline mode.")
        else:
            log.info(f"Ollama connected at {ollama_url}")
            models = await self.client.list_models()
            log.info(f"Available models: {', '.join(models) or 'none'}")

        try:
            await self.link.connect()
        except RelayConnectError as e:
            raise FatalStartupError(str(e)) from e

    async def run(self) -> int:
        """Run the bridge until a signal arrives. Returns exit code."""
        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._stop.set)
            except (NotImplementedError, RuntimeError):
                pass  # Windows / non-main thread

        try:
            try:
                await self.initialize()
            except FatalStartupError as e:
                log.error(f"Fatal error: {e}")
                return 1

            log.info("=" * 50)
            log.info(f"Semantic Bridge started on port {self.config['BRIDGE_PORT']}")
            log.info(f"  Federation: {self.link.url}")
            log.info(f"  Ollama: {self.config['OLLAMA_URL']}")
            log.info(f"  Model: {self.config['SEMANTIC_MODEL']}")
            log.info("=" * 50)

            self.stats.start()
            self._server_task = asyncio.create_task(self._serve_http())

            await self._stop.wait()
            log.info("Shutting down...")
            return 0

        finally:
            await self._cleanup()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass

    async def _serve_http(self) -> None:
        """Serve the health/stats app until shutdown."""
        from hypercorn.asyncio import serve as hypercorn_serve
        from hypercorn.config import Config as HypercornConfig

        from .http_server import create_app

        hconfig = HypercornConfig()
        hconfig.bind = [f"{self.config['BRIDGE_HOST']}:{self.config['BRIDGE_PORT']}"]
        hconfig.accesslog = None
        hconfig.errorlog = "-"

        try:
            await hypercorn_serve(create_app(self), hconfig, shutdown_trigger=self._stop.wait)
        except Exception as e:
            # The relay pipeline keeps running without the health endpoint.
            log.error(f"Health server failed: {e}")

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        await self.stats.stop()

        if self._server_task:
            await self._server_task

        pending = self.router.queue_length
        if pending:
            log.info(f"Waiting for {pending} in-flight request(s)...")
            try:
                await asyncio.wait_for(self.router.join(), timeout=self.config["OLLAMA_TIMEOUT"])
            except asyncio.TimeoutError:
                log.warning("In-flight requests did not finish before shutdown")

        await self.link.close()
        await self.client.close()
        log.info("Goodbye!")


def main(argv: Optional[list[str]] = None):
    """CLI entry point."""
    load_dotenv()
    config = dict(load_config())

    parser = argparse.ArgumentParser(
        description="Semantic Bridge - relay federation requests to a local LLM",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  semantic-bridge
  semantic-bridge --federation-host relay.local --model llama3
  semantic-bridge --cache-capacity 1000 --reconnect-backoff 2.0
        """,
    )

    parser.add_argument(
        "--federation-host",
        default=config["FEDERATION_HOST"],
        help="Relay host (or set FEDERATION_HOST)",
    )
    parser.add_argument(
        "--federation-port",
        type=int,
        default=config["FEDERATION_PORT"],
        help="Relay port (default: 8810)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=config["BRIDGE_PORT"],
        help="Health/stats HTTP port (default: 8811)",
    )
    parser.add_argument(
        "--ollama-url",
        default=config["OLLAMA_URL"],
        help="Backend base URL (or set OLLAMA_URL)",
    )
    parser.add_argument(
        "--model",
        default=config["SEMANTIC_MODEL"],
        help="Default model name (default: mistral)",
    )
    parser.add_argument(
        "--cache-capacity",
        type=int,
        default=config["CACHE_CAPACITY"],
        help="Max cached responses, 0 = unbounded (default: 0)",
    )
    parser.add_argument(
        "--reconnect-backoff",
        type=float,
        default=config["RECONNECT_BACKOFF"],
        help="Reconnect delay multiplier, 1.0 = fixed delay (default: 1.0)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config.update({
        "FEDERATION_HOST": args.federation_host,
        "FEDERATION_PORT": args.federation_port,
        "BRIDGE_PORT": args.port,
        "OLLAMA_URL": args.ollama_url,
        "SEMANTIC_MODEL": args.model,
        "CACHE_CAPACITY": args.cache_capacity,
        "RECONNECT_BACKOFF": args.reconnect_backoff,
    })

    bridge = SemanticBridge(config)
    exit_code = asyncio.run(bridge.run())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
