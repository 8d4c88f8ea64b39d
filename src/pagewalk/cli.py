"""
Command line entry point.

Usage:
  pagewalk [options] RESOURCE [key=value ...]

Walks every page of RESOURCE, writing one JSON document per line to stdout.
Progress and errors go to stderr. Exit codes: 0 done, 1 request failure,
2 invalid invocation, 3 aborted on an exhausted window (-x), 4 aborted on an
over-long delay (-X).
"""
# [CTX:PBI-1:1-8:CLI]

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, TextIO

from pagewalk import __version__
from pagewalk.core import (
    ConfigValidationError,
    Credentials,
    DelayPolicy,
    ExitCode,
    FetchConfig,
    FetchOutcome,
    PaginationLoop,
    RequestExecutor,
    TimeProvider,
    load_credentials,
    load_profile,
    open_state_store,
    validate_config,
)
from pagewalk.core.config import (
    CREDENTIALS_ENV_VAR,
    DEFAULT_DELAY_FALLBACK_S,
    DEFAULT_DELAY_LIMIT_S,
    DEFAULT_TIMEOUT_S,
    default_credentials_path,
    parse_param,
)
from pagewalk.core.telemetry import TelemetryRecorder
from pagewalk.executors import HttpRequestExecutor

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pagewalk",
        description="Fetch every page of a cursor-paginated API resource, "
                    "waiting out rate-limit windows.",
    )
    parser.add_argument("resource", help="API path, relative to the base URL")
    parser.add_argument(
        "params", nargs="*", metavar="key=value", help="request parameters"
    )
    parser.add_argument(
        "-f", "--credentials", type=Path, default=None,
        help=f"credentials file (default: ${CREDENTIALS_ENV_VAR})",
    )
    parser.add_argument("-p", "--post", action="store_true", help="use POST instead of GET")
    parser.add_argument("-c", "--cursor", default=None, help="resume at this cursor")
    parser.add_argument("-m", "--max-pages", type=int, default=None, help="maximum pages to fetch")
    parser.add_argument("-s", "--state", type=Path, default=None, help="rate limit state file")
    parser.add_argument(
        "-t", "--timeout", type=float, default=DEFAULT_TIMEOUT_S,
        help=f"per-request timeout in seconds (default: {DEFAULT_TIMEOUT_S})",
    )
    parser.add_argument(
        "-d", "--delay-fallback", type=int, default=DEFAULT_DELAY_FALLBACK_S,
        help=f"delay when the reset time is unknown (default: {DEFAULT_DELAY_FALLBACK_S})",
    )
    parser.add_argument(
        "-T", "--delay-limit", type=int, default=DEFAULT_DELAY_LIMIT_S,
        help=f"longest allowed sleep (default: {DEFAULT_DELAY_LIMIT_S})",
    )
    parser.add_argument(
        "-x", "--exit-on-limit", action="store_true",
        help="exit with code 3 instead of waiting for an exhausted window",
    )
    parser.add_argument(
        "-X", "--exit-on-delay", action="store_true",
        help="exit with code 4 instead of clamping a delay above the limit",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log progress to stderr")
    parser.add_argument("-b", "--base-url", default=None, help="API base URL")
    parser.add_argument("-C", "--profile", type=Path, default=None, help="YAML API profile")
    parser.add_argument(
        "--no-refill", action="store_true",
        help="do not assume a full window after waiting for an exhausted one",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.WARNING,
        format="[%(asctime)s] %(levelname)s [%(name)s] %(message)s",
        datefmt="%d/%b/%Y %H:%M:%S",
    )
    logging.getLogger("pagewalk").setLevel(logging.DEBUG if verbose else logging.WARNING)
    for noisy in ("aiohttp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def build_config(args: argparse.Namespace) -> tuple[FetchConfig, Credentials]:
    """
    Turn parsed arguments into a validated FetchConfig and its credentials.

    Raises:
        ConfigValidationError: If any argument, file or combination is invalid
    """
    params = tuple(parse_param(raw) for raw in args.params)
    credentials_path = args.credentials or default_credentials_path()
    credentials = load_credentials(credentials_path)
    profile = load_profile(args.profile)

    config = FetchConfig(
        resource=args.resource.lstrip("/"),
        params=params,
        method="POST" if args.post else "GET",
        credentials_path=credentials_path,
        base_url=args.base_url or credentials.base_url,
        cursor=args.cursor,
        max_pages=args.max_pages,
        state_path=args.state,
        timeout_s=args.timeout,
        policy=DelayPolicy(
            delay_fallback=args.delay_fallback,
            delay_limit=args.delay_limit,
            exit_on_limit=args.exit_on_limit,
            exit_on_delay=args.exit_on_delay,
        ),
        verbose=args.verbose,
        refill_after_wait=not args.no_refill,
        profile=profile,
    )
    validate_config(config)

    if not config.url.startswith(("http://", "https://")):
        raise ConfigValidationError(
            f"no base URL for {config.resource!r}; pass -b or set base_url "
            f"in the profile or credentials"
        )
    return config, credentials


async def run_fetch(
    config: FetchConfig,
    credentials: Credentials,
    output: TextIO,
    executor: Optional[RequestExecutor] = None,
    time_provider: Optional[TimeProvider] = None,
    recorder: Optional[TelemetryRecorder] = None,
) -> FetchOutcome:
    """Run the pagination loop with an executor that is closed on every exit path."""
    state_store = open_state_store(config.state_path)
    async with (executor or HttpRequestExecutor()) as active:
        loop = PaginationLoop(
            config,
            active,
            output,
            credentials=credentials,
            state_store=state_store,
            time_provider=time_provider,
            recorder=recorder,
        )
        return await loop.run()


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_intermixed_args(argv)
    configure_logging(args.verbose)

    try:
        config, credentials = build_config(args)
    except ConfigValidationError as e:
        logger.error(f"Invalid invocation: {e}")
        return int(ExitCode.USAGE)

    try:
        outcome = asyncio.run(run_fetch(config, credentials, sys.stdout))
    except BrokenPipeError:
        # Reader closed stdout, e.g. piped into head
        logger.warning(f"Output closed before {config.resource} was fully fetched")
        return int(ExitCode.FAILURE)
    except OSError as e:
        logger.error(f"I/O error: {e}")
        return int(ExitCode.FAILURE)

    logger.info(
        f"Finished {config.resource}: {outcome.state.value}, "
        f"{outcome.pages} page(s), cursor {outcome.cursor}"
    )
    return int(outcome.exit_code)


if __name__ == "__main__":
    sys.exit(main())
