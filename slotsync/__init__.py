"""slotsync - calendar synchronization and meeting availability server.

Merges CalDAV and token-REST calendars into one busy/free view, keeps it warm
with a background sync scheduler and serves bookable slots over HTTP.

Imports are kept light so the package can be inspected without pulling in
aiohttp or the storage layer.
"""

__version__ = "1.0.0"

from typing import Optional


def _init_logging(level_name: Optional[str]) -> None:
    """Initialize root logging to stream colorized records to the console.

    Honors ``SLOTSYNC_DEBUG`` (truthy values: "1", "true", "yes", "on"), which
    forces DEBUG verbosity regardless of ``level_name``.
    """
    import logging
    import os
    import sys

    from colorlog import ColoredFormatter

    debug_env = os.environ.get("SLOTSYNC_DEBUG", "")
    if debug_env.strip().lower() in ("1", "true", "yes", "on"):
        level_name = "DEBUG"

    root = logging.getLogger()
    # Only add a handler when none is present to avoid duplicate output.
    if not root.handlers:
        handler = logging.StreamHandler(stream=sys.stderr)
        # HH:MM:SS  LEVEL   logger.name: message (only the level is colorized)
        fmt = "%(asctime)s %(log_color)s%(levelname)-7s%(reset)s %(name)s: %(message)s"
        log_colors = {
            "DEBUG": "cyan",
            "INFO": "green",
            "WARNING": "yellow",
            "ERROR": "red",
            "CRITICAL": "bold_red",
        }
        handler.setFormatter(ColoredFormatter(fmt, datefmt="%H:%M:%S", log_colors=log_colors))
        root.addHandler(handler)

    level = logging.INFO
    if isinstance(level_name, str):
        level = getattr(logging, level_name.upper(), logging.INFO)
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)
    logging.getLogger(__name__).debug(
        "Logging initialized at level %s", logging.getLevelName(level)
    )


def run_server(args: Optional[object] = None) -> None:
    """Start the slotsync server.

    Args:
        args: Optional command line namespace carrying ``port`` and ``config``

    Behavior:
    - Initialize console logging early from ``SLOTSYNC_LOG_LEVEL``.
    - Build the Config from the YAML file and ``SLOTSYNC_*`` environment.
    - Apply command line overrides, then block in ``start_server`` until shutdown.
    """
    import logging
    import os

    _init_logging(os.environ.get("SLOTSYNC_LOG_LEVEL"))
    logger = logging.getLogger(__name__)

    from slotsync.api import server

    config_path = getattr(args, "config", None) if args is not None else None
    cfg = server._build_default_config_from_env(config_path)

    port = getattr(args, "port", None) if args is not None else None
    if port is not None:
        cfg.server_port = int(port)
        logger.debug("Applied command line port override: %d", cfg.server_port)

    if cfg.log_level:
        logging.getLogger().setLevel(getattr(logging, cfg.log_level, logging.INFO))

    logger.info("Starting slotsync %s on %s:%d", __version__, cfg.server_bind, cfg.server_port)
    server.start_server(cfg)
