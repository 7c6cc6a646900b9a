"""netplane daemon -- entry point.

Usage::

    python -m netplane [--config PATH] [--host HOST] [--port PORT]
                       [--backend {nmcli,memory}] [--log-level LEVEL]

Startup sequence:
    1. Parse CLI arguments
    2. Load configuration from YAML (or defaults), apply CLI overrides
    3. Open the SQLite store and event log (falls back to memory)
    4. Build and start the control plane
    5. Create the FastAPI application with dependency injection
    6. Start the uvicorn server
    7. On shutdown signal: stop the control plane and close the store
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import uvicorn

from netplane.app import create_app
from netplane.config import Settings, load_settings
from netplane.exceptions import ConfigError

logger = logging.getLogger("netplane")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to ``sys.argv[1:]`` when ``None``.
    """
    parser = argparse.ArgumentParser(
        prog="netplane",
        description="Host-local network connection control plane",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Address for the API server (default: from config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the API server (default: from config)",
    )
    parser.add_argument(
        "--backend",
        choices=["nmcli", "memory"],
        default=None,
        help="Network backend (default: from config)",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level (default: from config)",
    )
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> Settings:
    """Load settings and apply command-line overrides."""
    settings = load_settings(config_path=Path(args.config) if args.config else None)
    if args.host is not None:
        settings.api.host = args.host
    if args.port is not None:
        settings.api.port = args.port
    if args.backend is not None:
        settings.backend.type = args.backend
    if args.log_level is not None:
        settings.logging.level = args.log_level
    return settings


async def run_daemon(settings: Settings) -> None:
    """Start the control plane and API server and run until cancelled."""
    from netplane.api import deps
    from netplane.api.ws import broadcast_event
    from netplane.service import create_control_plane

    # 1. Build and start the control plane
    plane = await create_control_plane(settings)
    await plane.start()

    # 2. Create FastAPI app and wire production dependencies
    app = create_app()

    async def _prod_get_controller():
        return plane.controller

    async def _prod_get_recovery():
        return plane.recovery

    async def _prod_get_event_bus():
        return plane.event_bus

    async def _prod_get_settings():
        return settings

    app.dependency_overrides[deps.get_controller] = _prod_get_controller
    app.dependency_overrides[deps.get_recovery] = _prod_get_recovery
    app.dependency_overrides[deps.get_event_bus] = _prod_get_event_bus
    app.dependency_overrides[deps.get_settings] = _prod_get_settings

    # 3. Live WebSocket broadcast from the event bus
    plane.event_bus.subscribe(["*"], broadcast_event)

    # 4. Configure and start uvicorn
    uvicorn_config = uvicorn.Config(
        app=app,
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.logging.level.lower(),
    )
    server = uvicorn.Server(uvicorn_config)
    logger.info(
        "netplane listening on %s:%d (backend=%s)",
        settings.api.host, settings.api.port, settings.backend.type,
    )

    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("Shutdown signal received -- stopping netplane")
    finally:
        logger.info("Stopping control plane...")
        await plane.stop()
        logger.info("netplane shutdown complete")


def main(argv: list[str] | None = None) -> None:
    """Parse CLI args and run the daemon."""
    args = parse_args(argv)
    try:
        settings = load_config(args)
    except ConfigError as exc:
        sys.exit(f"Invalid configuration: {exc}")

    logging.basicConfig(
        level=getattr(logging, settings.logging.level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    try:
        asyncio.run(run_daemon(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
