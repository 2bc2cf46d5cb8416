"""Main entry point for prootbox."""

import argparse
import asyncio
import logging
import sys
from importlib import resources
from pathlib import Path
from typing import Optional, Sequence

from .config import ProotboxConfig, get_config, reload_config
from .errors import LauncherError, UsageError
from .launcher import (
    CancellationToken,
    ProcessOutcome,
    ProcessResult,
    SandboxLauncher,
    cancel_on_signals,
    resolve_target,
)

logger = logging.getLogger("prootbox")

ROOTFS_ASSET = "rootfs.tar.gz"
TOOL_ASSET = "proot"

USAGE_EXIT_STATUS = 2


def setup_logging(level: str = "WARNING") -> None:
    """Configure logging for prootbox (stderr only)."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def read_asset(name: str, override: Optional[Path] = None) -> bytes:
    """Read a packaged asset, or the file configured in its place."""
    try:
        if override is not None:
            return override.read_bytes()
        return (resources.files("prootbox") / "assets" / name).read_bytes()
    except OSError as e:
        source = override or f"packaged asset {name}"
        raise LauncherError(f"Cannot read {source}: {e}") from e


def create_launcher(config: ProotboxConfig) -> SandboxLauncher:
    """Build a launcher from the configured assets."""
    return SandboxLauncher(
        rootfs_archive=read_asset(ROOTFS_ASSET, config.assets.rootfs_archive),
        sandbox_tool=read_asset(TOOL_ASSET, config.assets.sandbox_tool),
        config=config.launcher,
    )


async def launch(launcher: SandboxLauncher, target: str, args: Sequence[str]) -> ProcessResult:
    """Run the launcher with SIGINT/SIGTERM wired to cancellation."""
    token = CancellationToken()
    with cancel_on_signals(token):
        return await launcher.run(target, args, cancel_token=token)


def run(
    target: str,
    args: Sequence[str],
    config: Optional[ProotboxConfig] = None,
) -> int:
    """Run ``target`` and return the exit status to report.

    Uses the loaded configuration when ``config`` is omitted.
    """
    # Refuse a bad target before reading the assets
    resolve_target(target)
    launcher = create_launcher(config or get_config())
    result = asyncio.run(launch(launcher, target, args))
    logger.debug(f"Run finished: {result.to_dict()}")

    if result.outcome == ProcessOutcome.FAILED:
        logger.error(f"{result.error_type}: {result.error_message}")
    elif result.outcome == ProcessOutcome.CANCELLED:
        logger.warning("Interrupted before the target was started")
    return result.exit_status


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        prog="prootbox",
        description="Run a program inside the embedded rootfs under proot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  prootbox /bin/hello                 # Run /bin/hello from the rootfs
  prootbox /bin/sh -c 'echo $PATH'    # Everything after the target is forwarded

Environment:
  PROOT_NO_CLEANUP=1                  # Keep the extracted rootfs for debugging
  PROOTBOX_CONFIG_DIR=DIR             # Read DIR/config.yaml instead of ~/.prootbox
        """,
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to a configuration file",
    )
    parser.add_argument("target", help="Executable path inside the rootfs")
    parser.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        help="Arguments forwarded to the target",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.config is not None and not args.config.exists():
        parser.error(f"configuration file not found: {args.config}")

    try:
        config = reload_config(args.config)
    except ValueError as e:
        setup_logging()
        logger.error(str(e))
        sys.exit(1)

    setup_logging("DEBUG" if args.verbose else config.logging.level)

    try:
        status = run(args.target, args.args)
    except UsageError as e:
        logger.error(str(e))
        sys.exit(USAGE_EXIT_STATUS)
    except LauncherError as e:
        logger.error(str(e))
        sys.exit(1)

    sys.exit(status)


if __name__ == "__main__":
    main()
