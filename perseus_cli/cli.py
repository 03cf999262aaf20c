"""
Main CLI for the perseus tool.

Builds, serves, exports, and deploys perseus projects.
"""

from __future__ import annotations

import argparse
import logging
import sys

from perseus_cli import __version__
from perseus_cli.build.config import DEFAULT_HOST, DEFAULT_PORT
from perseus_cli.core.errors import PerseusError
from perseus_cli.core.utils import log

logger = logging.getLogger(__name__)


# =============================================================================
# Argument Parsing
# =============================================================================


def create_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with all subcommands."""

    parser = argparse.ArgumentParser(
        prog="perseus",
        description="Build, serve, and package perseus apps",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  build      Build the engine and client bundle once
  serve      Build and run the development server
  export     Export every route to a static site
  deploy     Assemble a release build for deployment
  install    Download the wasm toolchain into the cache
  clean      Remove build output

Examples:
  perseus serve -w                 # Dev server with live reload
  perseus build --release          # Optimized build
  perseus export --archive site.tar.gz
  perseus deploy -e                # Deploy as a static site
        """,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show debug logging",
    )

    parser.add_argument(
        "--project",
        help="Project directory (default: nearest parent with Cargo.toml)",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # --- build ---
    build_parser = subparsers.add_parser("build", help="Build the engine and client bundle once")
    build_parser.add_argument("--release", action="store_true", help="Optimized release build")
    build_parser.add_argument("--compress", action="store_true", help="Write precompressed .gz assets")

    # --- serve ---
    serve_parser = subparsers.add_parser("serve", help="Build and run the development server")
    serve_parser.add_argument("-w", "--watch", action="store_true", help="Rebuild and reload on changes")
    serve_parser.add_argument("--no-build", action="store_true", help="Serve the existing build")
    serve_parser.add_argument("--no-run", action="store_true", help="Build but do not start the server")
    serve_parser.add_argument("--host", default=None, help=f"Bind address (default: {DEFAULT_HOST})")
    serve_parser.add_argument("--port", type=int, default=None, help=f"HTTP port (default: {DEFAULT_PORT})")
    serve_parser.add_argument(
        "--custom-watch",
        action="append",
        default=[],
        metavar="PATH",
        help="Extra path to watch (repeatable)",
    )

    # --- export ---
    export_parser = subparsers.add_parser("export", help="Export every route to a static site")
    export_parser.add_argument("--release", action="store_true", help="Optimized release build")
    export_parser.add_argument("--archive", metavar="PATH", help="Also write a deterministic .tar.gz")
    export_parser.add_argument("-s", "--serve", action="store_true", help="Serve the exported site")
    export_parser.add_argument("--host", default=None, help=f"Bind address (default: {DEFAULT_HOST})")
    export_parser.add_argument("--port", type=int, default=None, help=f"HTTP port (default: {DEFAULT_PORT})")

    # --- deploy ---
    deploy_parser = subparsers.add_parser("deploy", help="Assemble a release build for deployment")
    deploy_parser.add_argument("-e", "--export", action="store_true", help="Deploy as an exported static site")
    deploy_parser.add_argument("-o", "--output", metavar="DIR", help="Output directory (default: pkg)")
    deploy_parser.add_argument("--archive", metavar="PATH", help="Also write a deterministic .tar.gz")

    # --- install ---
    install_parser = subparsers.add_parser("install", help="Download the wasm toolchain into the cache")
    install_parser.add_argument("--force", action="store_true", help="Re-download cached tools")

    # --- clean ---
    clean_parser = subparsers.add_parser("clean", help="Remove build output")
    clean_parser.add_argument("--dist-only", action="store_true", help="Keep cargo's target directory")
    clean_parser.add_argument("--dry-run", action="store_true", help="Show what would be removed")

    return parser


# =============================================================================
# Main
# =============================================================================


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        log.set_color(False)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    try:
        if args.command == "build":
            from perseus_cli.commands.build import cmd_build
            return cmd_build(args)

        elif args.command == "serve":
            from perseus_cli.commands.serve import cmd_serve
            return cmd_serve(args)

        elif args.command == "export":
            from perseus_cli.commands.export import cmd_export
            return cmd_export(args)

        elif args.command == "deploy":
            from perseus_cli.commands.deploy import cmd_deploy
            return cmd_deploy(args)

        elif args.command == "install":
            from perseus_cli.commands.install import cmd_install
            return cmd_install(args)

        elif args.command == "clean":
            from perseus_cli.commands.clean import cmd_clean
            return cmd_clean(args)

        else:
            log.error(f"Unknown command: {args.command}")
            return 1

    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130
    except PerseusError as e:
        log.error(str(e))
        return 1
    except Exception as e:
        logger.debug("unhandled error", exc_info=True)
        log.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
