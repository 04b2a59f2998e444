"""HTTP server for slotsync: aiohttp application plus background sync.

This module wires the dependency container to an aiohttp application and
runs it together with the background SyncScheduler:

- request-path reads go through the EventCache (stale-while-revalidate)
- the scheduler keeps synced rows warm every few minutes
- routes: /calendar/*, /availability, /hours, /meetings, /health
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from typing import Any, Optional

from slotsync.config_loader import Config, load_config
from slotsync.core.config_manager import ConfigManager
from slotsync.core.dependencies import AppDependencies, DependencyContainer
from slotsync.core.http_client import close_all_clients
from slotsync.logging_config import configure_logging

logger = logging.getLogger(__name__)

MAX_PORT_ATTEMPTS = 10


def _build_default_config_from_env(path: Optional[str] = None) -> Config:
    """Build the server Config from the YAML file plus ``SLOTSYNC_*`` environment.

    A ``.env`` file in the working directory is loaded first without
    overriding variables already present in the environment.
    """
    overrides = ConfigManager().load_full_config()
    if overrides:
        logger.debug("Environment overrides for keys: %s", ", ".join(sorted(overrides)))
    return load_config(path, overrides=overrides)


def _make_app(deps: AppDependencies) -> Any:
    """Create the aiohttp application with every route registered.

    aiohttp is imported lazily so the module can be imported by tooling that
    only needs the config helpers.
    """
    from aiohttp import web

    from slotsync.api.middleware import correlation_id_middleware, error_middleware
    from slotsync.api.routes import (
        register_admin_routes,
        register_availability_routes,
        register_calendar_routes,
        register_health_routes,
        register_sync_routes,
    )

    app = web.Application(middlewares=[correlation_id_middleware, error_middleware])
    admin_token = deps.config.admin_bearer_token

    register_calendar_routes(
        app,
        calendar_service=deps.calendar_service,
        busy_config=deps.busy_config,
        cache=deps.cache,
        tz=deps.tz,
        admin_token=admin_token,
    )
    register_sync_routes(app, deps.scheduler, admin_token=admin_token)
    register_availability_routes(app, deps.availability)
    register_admin_routes(app, deps.hours, deps.meetings, admin_token=admin_token)
    register_health_routes(
        app, deps.health_tracker, deps.cache, deps.time_provider, scheduler=deps.scheduler
    )

    async def _shutdown(_app: Any) -> None:
        logger.info("Application shutdown requested")

    app.on_shutdown.append(_shutdown)
    return app


async def _start_site(runner: Any, host: str, configured_port: int) -> int:
    """Bind the configured port, or the next free one; return the bound port."""
    from aiohttp import web

    for port_offset in range(MAX_PORT_ATTEMPTS):
        port = configured_port + port_offset
        site = web.TCPSite(runner, host=host, port=port)
        try:
            await site.start()
        except OSError as e:
            if "address already in use" not in str(e).lower():
                logger.exception("Failed to start server on %s:%d", host, port)
                raise
            logger.debug("Port %d in use, trying next port", port)
            continue
        if port != configured_port:
            logger.warning(
                "Configured port %d was in use, using port %d instead", configured_port, port
            )
        return port

    logger.error(
        "Could not find available port in range %d-%d",
        configured_port,
        configured_port + MAX_PORT_ATTEMPTS - 1,
    )
    raise RuntimeError(
        f"No available port found in range {configured_port}-"
        f"{configured_port + MAX_PORT_ATTEMPTS - 1}"
    )


async def _serve(config: Config, external_stop_event: Optional[asyncio.Event] = None) -> None:
    """Run the HTTP server and the sync scheduler until signalled to stop.

    Args:
        config: Server configuration
        external_stop_event: Optional event to signal shutdown. If provided,
            signal handlers are NOT registered (caller owns signal handling).
    """
    from aiohttp import web

    stop_event = external_stop_event or asyncio.Event()
    deps = DependencyContainer.build_dependencies(config)
    if not deps.merge_engine.adapters:
        logger.warning("No calendar provider configured; calendar views will be empty")

    app = _make_app(deps)
    runner = web.AppRunner(app)
    await runner.setup()
    port = await _start_site(runner, config.server_bind, config.server_port)
    logger.info(
        "Server started successfully on %s:%d (pid %d)", config.server_bind, port, os.getpid()
    )

    await deps.scheduler.start()

    if external_stop_event is None:
        loop = asyncio.get_running_loop()

        def _on_signal() -> None:
            logger.info("Shutdown signal received")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_signal)
    else:
        logger.debug("Using external stop event - skipping signal handler registration")

    await stop_event.wait()
    logger.info("Stop event received, shutting down")

    await deps.scheduler.stop()
    await runner.cleanup()
    await deps.cache.close()
    try:
        await close_all_clients()
        logger.debug("Shared HTTP clients cleaned up")
    except Exception as e:
        logger.warning("Error cleaning up shared HTTP clients: %s", e)

    logger.info("Server shutdown complete")


def start_server(config: Config) -> None:
    """Run the server on a fresh event loop; blocks until SIGINT/SIGTERM."""
    configure_logging(debug_mode=config.debug_logging)
    logger.info("Logging configuration applied: debug_mode=%s", config.debug_logging)

    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception:
        logger.exception("Server terminated unexpectedly")
        raise
