"""agui-bridge command-line entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler

import yaml

from agui_bridge.bridge import AgentBridge
from agui_bridge.engine.config import BridgeConfig
from agui_bridge.engine.errors import ProcessSpawnError
from agui_bridge.engine.supervisor import check_available
from agui_bridge.engine.yaml_config import find_default_config, load_yaml_config

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> Path:
    log_level = "DEBUG" if verbose else os.getenv("AGUI_BRIDGE_LOG_LEVEL", "INFO").upper()
    log_dir = Path.home() / ".agui-bridge" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agui-bridge.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _apply_log_level(level_name: str) -> int:
    """Set the root level from config once it is loaded."""
    level = logging.getLevelName(level_name.strip().upper())
    if not isinstance(level, int):
        logger.warning("Unknown log level %r, keeping INFO", level_name)
        level = logging.INFO
    logging.getLogger().setLevel(level)
    return level


def _resolve_config(args) -> BridgeConfig:
    config_path = args.config
    if config_path:
        explicit = Path(config_path)
        logger.info("Using explicit config path: %s (exists=%s)", explicit, explicit.exists())
    else:
        auto_yaml = find_default_config()
        if auto_yaml is not None:
            config_path = str(auto_yaml)
            logger.info("Auto-discovered config: %s", config_path)
        else:
            logger.info("No config file found in %s; using defaults", Path.cwd())

    config = load_yaml_config(config_path) if config_path else BridgeConfig.from_env()

    # Command-line flags win over file and environment.
    if args.host:
        config.host = args.host
    if args.http_port is not None:
        config.http_port = args.http_port
    if args.ws_port is not None:
        config.ws_port = args.ws_port
    if args.cli_path:
        config.cli_path = args.cli_path
    return config


async def _serve(config: BridgeConfig, args) -> None:
    bridge = AgentBridge(config)
    ws_port, http_port = await bridge.start()
    sys.stdout.write(json.dumps({"ws_port": ws_port, "http_port": http_port}) + "\n")
    sys.stdout.flush()

    try:
        if not args.no_session:
            cwd = str(Path(args.cwd or Path.cwd()).resolve())
            try:
                session_id = await bridge.spawn_session(cwd, initial_prompt=args.prompt)
            except ProcessSpawnError as exc:
                logger.error("Initial session failed: %s", exc)
            else:
                logger.info("Initial session %s ready in %s", session_id[:8], cwd)
        logger.info("UI clients can connect at %s", bridge.runtime_url)
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Bridge shutting down")
    finally:
        await bridge.stop()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agui-bridge",
        description="Serve agent CLI sessions to AG-UI clients over HTTP+SSE",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./agui-bridge.yaml if present)",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface both servers bind to",
    )
    parser.add_argument(
        "--http-port", type=int, default=None,
        help="UI server port (0=random available port)",
    )
    parser.add_argument(
        "--ws-port", type=int, default=None,
        help="Agent socket server port (0=random available port)",
    )
    parser.add_argument(
        "--cwd", metavar="DIR",
        help="Working directory for the initial session (default: current directory)",
    )
    parser.add_argument(
        "--prompt", metavar="TEXT",
        help="Initial prompt passed to the agent on launch",
    )
    parser.add_argument(
        "--no-session", action="store_true",
        help="Start the servers without spawning an agent",
    )
    parser.add_argument(
        "--cli-path", metavar="PATH",
        help="Agent binary to launch (default: claude)",
    )
    parser.add_argument(
        "--check", action="store_true",
        help="Check that the agent binary supports --sdk-url and exit",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Debug logging",
    )
    args = parser.parse_args()

    log_file = _configure_logging(args.verbose)
    logger.info(
        "Starting agui-bridge cwd=%s config=%s log=%s",
        Path.cwd(), args.config or "<auto>", log_file,
    )

    try:
        config = _resolve_config(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.error("Could not load configuration: %s", exc)
        sys.exit(2)
    if not args.verbose:
        _apply_log_level(config.log_level)

    if args.check:
        ok = asyncio.run(check_available(config.cli_path))
        print(f"{config.cli_path}: {'supports' if ok else 'does not support'} --sdk-url")
        sys.exit(0 if ok else 1)

    try:
        asyncio.run(_serve(config, args))
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
