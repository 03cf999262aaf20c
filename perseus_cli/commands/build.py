"""perseus build -- One-shot build of the engine and client bundle."""

from __future__ import annotations

import argparse

from perseus_cli.commands.common import build_once, resolve_config, run_supervised
from perseus_cli.core.utils import log


def cmd_build(args: argparse.Namespace) -> int:
    """Handle 'perseus build'."""
    config = resolve_config(
        args,
        release=args.release,
        compress=args.compress or None,
    )
    log.header(f"Building {config.package_name} ({config.profile})")

    async def body(supervisor) -> int:
        run = await build_once(config, supervisor)
        run.raise_for_failure()
        return 0

    return run_supervised(body)
