"""Command-line entry for ics_scraper.

Scrapes one page and writes the resulting calendar (or a JSON dump of the
events and run metadata) to a file or stdout. Configuration comes from the
environment and an optional .env file; command-line options override it.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from .core.config_manager import create_config_from_env
from .core.exceptions import ErrorCode, ScraperError
from .domain.models import ProgressType, ScraperResult
from .orchestrator import run_pipeline, stream_pipeline
from .scraper_logging import configure_scraper_logging

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_SCRAPE_FAILED = 1
EXIT_BAD_INPUT = 2


def _create_parser() -> argparse.ArgumentParser:
    """Create argument parser for the ics_scraper CLI.

    Returns:
        Configured argument parser
    """
    parser = argparse.ArgumentParser(
        prog="ics-scraper",
        description="Extract calendar events from a web page into an ICS file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ics-scraper https://example.org/events                 # ICS to stdout
  ics-scraper https://example.org/events -o events.ics   # ICS to a file
  ics-scraper --input page.html --format json            # Local page, JSON output
  ics-scraper https://example.org/events --stream        # Progress on stderr
        """,
    )

    parser.add_argument("url", nargs="?", help="Page URL to scrape (or set SOURCE_URL)")
    parser.add_argument("--input", metavar="FILE", type=Path, help="Read page content from a local file")
    parser.add_argument("-o", "--output", metavar="FILE", type=Path, help="Write output here instead of stdout")
    parser.add_argument("--format", choices=["ics", "json"], default="ics", help="Output format (default: ics)")
    parser.add_argument("--timezone", metavar="TZ", help="Default IANA timezone for events")
    parser.add_argument("--calendar-name", metavar="NAME", help="Calendar display name")
    parser.add_argument("--no-alarms", action="store_true", help="Do not add reminders to events")
    parser.add_argument("--invite", action="store_true", help="Use METHOD:REQUEST instead of PUBLISH")
    parser.add_argument("--fuzzy-dedup", action="store_true", help="Also merge events with near-identical titles")
    parser.add_argument("--stream", action="store_true", help="Print progress while scraping")
    parser.add_argument("--env-file", metavar="FILE", type=Path, help="Load defaults from this .env file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    return parser


def _overrides_from_args(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {"source": {}, "processing": {}, "ics": {}}
    if args.url:
        overrides["source"]["url"] = args.url
    if args.input is not None:
        overrides["source"]["content"] = args.input.read_text(encoding="utf-8")
    if args.timezone:
        overrides["processing"]["timezone"] = {"default": args.timezone}
        overrides["ics"]["timezone"] = args.timezone
    if args.fuzzy_dedup:
        overrides["processing"]["fuzzy_dedup"] = True
    if args.calendar_name:
        overrides["ics"]["calendar_name"] = args.calendar_name
    if args.no_alarms:
        overrides["ics"]["include_alarms"] = False
    if args.invite:
        overrides["ics"]["method"] = "REQUEST"
    return {key: value for key, value in overrides.items() if value}


def _render(result: ScraperResult, output_format: str) -> str:
    if output_format == "json":
        return json.dumps(result.model_dump(mode="json"), indent=2)
    return result.ics_content or ""


async def _scrape(args: argparse.Namespace) -> ScraperResult:
    config = create_config_from_env(args.env_file, _overrides_from_args(args))
    if not args.stream:
        return await run_pipeline(config)

    result: Optional[ScraperResult] = None
    async for item in stream_pipeline(config):
        if item.type == ProgressType.STATUS:
            print(f"[{item.stage}] {item.message}", file=sys.stderr)
        elif item.type == ProgressType.EVENT and item.event is not None:
            print(f"  + {item.event.title} ({item.event.start_time:%Y-%m-%d %H:%M})", file=sys.stderr)
        elif item.type == ProgressType.ERROR and item.error is not None:
            raise ScraperError(
                item.error.message,
                ErrorCode(item.error.code),
                details=item.error.details,
                retryable=item.error.retryable,
            )
        elif item.type == ProgressType.COMPLETE:
            result = item.result
    if result is None:
        raise ScraperError("Scrape finished without a result")
    return result


def main(argv: Optional[list[str]] = None) -> int:
    """Run the ics_scraper CLI.

    Returns:
        Process exit code
    """
    parser = _create_parser()
    args = parser.parse_args(argv)
    configure_scraper_logging(debug_mode=args.debug)

    if args.input is not None and not args.input.exists():
        parser.error(f"input file not found: {args.input}")

    try:
        result = asyncio.run(_scrape(args))
    except ScraperError as e:
        print(f"Error [{e.code.value}]: {e.message}", file=sys.stderr)
        if e.code == ErrorCode.CONFIGURATION_ERROR:
            return EXIT_BAD_INPUT
        return EXIT_SCRAPE_FAILED
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_SCRAPE_FAILED

    for warning in result.warnings:
        print(f"Warning: {warning}", file=sys.stderr)

    rendered = _render(result, args.format)
    if args.output is not None:
        args.output.write_text(rendered, encoding="utf-8")
        print(f"Wrote {len(result.events)} events to {args.output}", file=sys.stderr)
    else:
        sys.stdout.write(rendered)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
