"""CLI entry point for the Chef Bodega proxy server.

This module turns parsed command-line arguments (plus an optional YAML config
file) into a server configuration and runs the server until interrupted.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import sys
from typing import Any, Dict, Optional

import yaml

from constants import Constants, ExitCodes, VERSION
from common.logging_utils import configure_logging
from bodega.errors import StartupConfigurationError
from bodega.server import BodegaConfig, run_proxy_server_sync

logger = logging.getLogger(__name__)


def _is_local_bind_host(host: str) -> bool:
    """Return True if host is a loopback/local bind target."""
    if not host:
        return False
    host_lower = host.strip().lower()
    if host_lower in ("localhost",):
        return True
    try:
        return ipaddress.ip_address(host_lower).is_loopback
    except ValueError:
        # Non-IP hostnames are treated as non-local unless explicitly allowed.
        return False


def _enforce_local_binding(host: str, allow_external: bool) -> None:
    """Enforce local-only binding unless explicitly allowed."""
    if _is_local_bind_host(host):
        return
    if not allow_external:
        sys.stderr.write(
            "ERROR: Non-local bindings require --allow-external.\n"
        )
        sys.exit(ExitCodes.CONFIG_ERROR.value)
    logger.warning(
        "Binding proxy to non-local address (%s). Ensure network controls are in place.",
        host,
    )


def _load_config_file(config_path: Optional[str]) -> Dict[str, Any]:
    """Load server settings from a YAML file.

    Args:
        config_path: Path to YAML config file.

    Returns:
        Settings dict; the ``bodega`` section if present, else the whole document.

    Raises:
        StartupConfigurationError: If the file cannot be read or parsed.
    """
    if not config_path:
        return {}

    if not os.path.isfile(config_path):
        raise StartupConfigurationError(f"Config file not found: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise StartupConfigurationError(f"Failed to load config {config_path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise StartupConfigurationError(f"Config file {config_path} must contain a mapping")
    section = data.get("bodega", data)
    if not isinstance(section, dict):
        raise StartupConfigurationError(f"'bodega' section of {config_path} must be a mapping")
    return section


def _setup_logging(args: Any) -> None:
    """Configure logging based on CLI arguments.

    Args:
        args: Parsed CLI arguments.
    """
    # Honor CLI --loglevel
    if getattr(args, "LOG_LEVEL", None):
        os.environ[Constants.ENV_LOG_LEVEL] = str(args.LOG_LEVEL).upper()

    configure_logging()

    # Add file handler if --logfile specified
    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        formatter = logging.Formatter(Constants.LOG_FILE_FORMAT)
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)
        logger.info("Logging to file: %s", log_file)


def build_config(args: Any) -> BodegaConfig:
    """Merge the config file and CLI flags into a validated BodegaConfig.

    Raises:
        StartupConfigurationError: If the settings are incomplete or invalid.
    """
    file_settings = _load_config_file(getattr(args, "CONFIG", None))
    if file_settings:
        logger.info("Loaded config from: %s", args.CONFIG)
    config = BodegaConfig.from_args(args, base=BodegaConfig.from_mapping(file_settings))
    config.validate()
    return config


def run_proxy_server(args: Any) -> None:
    """Entry point for the proxy server command.

    Args:
        args: Parsed CLI arguments namespace.
    """
    _setup_logging(args)

    try:
        config = build_config(args)
    except StartupConfigurationError as e:
        logger.error("%s", e)
        sys.exit(ExitCodes.CONFIG_ERROR.value)

    _enforce_local_binding(config.host, config.allow_external)

    # Print startup banner
    print(
        f"\n"
        f"  Chef Bodega {VERSION}\n"
        f"  ==================\n"
        f"  Listening: http://{config.host}:{config.port}\n"
        f"  Chef server: {config.chef_server}\n"
        f"\n"
        f"  Configure Berkshelf:\n"
        f"    source '{config.base_url}'\n"
        f"\n"
        f"  Press Ctrl+C to stop\n"
    )

    try:
        run_proxy_server_sync(config)
    except StartupConfigurationError as e:
        logger.error("%s", e)
        sys.exit(ExitCodes.CONFIG_ERROR.value)
