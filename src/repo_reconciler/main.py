import argparse
import asyncio
import logging
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import ValidationError

from repo_reconciler.application.reconciler_service import ReconcilerService
from repo_reconciler.application.report import render_text
from repo_reconciler.config import Settings
from repo_reconciler.domain.exceptions import (
    MalformedDescriptor,
    ReconcilerException,
)
from repo_reconciler.infrastructure.descriptor import IDENTIFIER_PATTERN
from repo_reconciler.infrastructure.github_client import GitHubRestClient
from repo_reconciler.infrastructure.tokens import TokenRedactingFilter, is_valid_token_format

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2

try:
    __version__ = version("repo-reconciler")
except PackageNotFoundError:
    __version__ = "0.0.0"


def _identifier(value: str) -> str:
    if not IDENTIFIER_PATTERN.match(value):
        raise argparse.ArgumentTypeError(f"'{value}' is not an owner/repo identifier")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repo-reconciler",
        description="Keep GitHub repository metadata in sync with the local package descriptor.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Compare the descriptor with GitHub and apply missing metadata."
    )
    reconcile_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the differences without writing anything to GitHub.",
    )
    reconcile_parser.add_argument(
        "--grace-period",
        type=float,
        default=None,
        metavar="SECONDS",
        help="How long verify waits for GitHub to reflect updates (env: RECONCILER_GRACE_PERIOD).",
    )
    reconcile_parser.add_argument(
        "--identifier",
        type=_identifier,
        default=None,
        metavar="OWNER/REPO",
        help="Repository to reconcile. Defaults to the one named by repository.url.",
    )
    reconcile_parser.add_argument(
        "--descriptor",
        type=Path,
        default=None,
        help="Path to the package descriptor (env: RECONCILER_DESCRIPTOR, default: package.json).",
    )
    reconcile_parser.add_argument(
        "--max-workers",
        type=int,
        default=None,
        help="Maximum concurrent field updates (env: RECONCILER_MAX_WORKERS).",
    )
    reconcile_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        metavar="SECONDS",
        help="Cancel updates still running after this long (env: RECONCILER_TIMEOUT).",
    )
    reconcile_parser.add_argument("--json", action="store_true", help="Print the result as JSON.")
    reconcile_parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    return parser


def configure_logging(verbose: bool = False) -> None:
    # Logs go to stderr so stdout carries only the report.
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(TokenRedactingFilter())
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[handler],
    )


async def run_reconcile(args: argparse.Namespace, settings: Settings) -> int:
    token = settings.token_value()
    if token is None:
        if not args.dry_run:
            logger.error("GITHUB_TOKEN is not set in the environment.")
            return EXIT_FATAL
        logger.warning("GITHUB_TOKEN is not set; reading anonymously (public repositories only).")
    elif not is_valid_token_format(token):
        logger.warning("GITHUB_TOKEN does not look like a GitHub token; continuing anyway.")

    try:
        async with GitHubRestClient(
            token=token, api_url=settings.api_url, connector_limit=settings.max_workers
        ) as client:
            service = ReconcilerService(
                platform=client,
                max_workers=settings.max_workers,
                grace_period=settings.grace_period,
                timeout=settings.timeout,
            )
            result = await service.reconcile(
                settings.descriptor_path, identifier=args.identifier, dry_run=args.dry_run
            )
    except MalformedDescriptor as e:
        logger.error(str(e))
        return EXIT_FATAL
    except ReconcilerException as e:
        # Only the initial fetch gets here; later failures are reported per field.
        logger.error(f"Cannot reconcile: {type(e).__name__}: {e}")
        return EXIT_FATAL

    if args.json:
        print(result.model_dump_json(indent=2))
    else:
        print(render_text(result))
    return result.exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    # Load environment variables from .env file
    load_dotenv()

    try:
        settings = Settings.from_env(
            descriptor_path=args.descriptor,
            grace_period=args.grace_period,
            max_workers=args.max_workers,
            timeout=args.timeout,
        )
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_FATAL

    try:
        return asyncio.run(run_reconcile(args, settings))
    except KeyboardInterrupt:
        logger.info("Reconciliation interrupted by user.")
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
