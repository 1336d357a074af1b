import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from agents.purchase_agent.dispatcher import DEFAULT_PATTERN, PurchaseDispatcher
from agents.purchase_agent.errors import RequestLoadError
from agents.purchase_agent.flow import FlowSelectors
from agents.purchase_agent.models import PurchaseRequest, write_purchase_request
from agents.purchase_agent.service import build_console_service
from settings import (
    DATA_DIR,
    HEADLESS,
    SELECTOR_OVERRIDES,
    WEBHOOK_URL_FINAL,
    WEBHOOK_URL_STATUS,
    apply_timezone,
)


logger = logging.getLogger("purchase_runner.cli")

DEFAULT_REQUEST = "purchase-info.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Ticket purchase runner")
    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run one purchase now (or at its sale start with --schedule)")
    run.add_argument("request", nargs="?", default=DEFAULT_REQUEST, help="Purchase request JSON file")
    run.add_argument("--headless", action="store_true", default=HEADLESS, help="Run the browser without a window")
    run.add_argument("--schedule", action="store_true", help="Wait for saleStartTime before starting")
    run.add_argument("--dry-run", action="store_true", help="Go through the whole flow but stop before applying")

    schedule = commands.add_parser("schedule", help="Launch one purchase process per request at its sale start")
    schedule.add_argument("requests", nargs="*", help="Purchase request JSON files")
    schedule.add_argument("--all", action="store_true", help=f"Schedule every {DEFAULT_PATTERN} in the current directory")
    schedule.add_argument("--headless", action="store_true", default=HEADLESS, help="Launch purchases headless")

    convert = commands.add_parser("convert-form", help="Convert exported form data into a purchase request")
    convert.add_argument("form", help="Form data JSON file")
    convert.add_argument("output", nargs="?", default=DEFAULT_REQUEST, help="Output purchase request file")
    return parser


def cmd_run(args: argparse.Namespace) -> int:
    service = build_console_service(
        DATA_DIR,
        logging.getLogger("purchase_runner.purchase_agent"),
        webhook_status_url=WEBHOOK_URL_STATUS,
        webhook_final_url=WEBHOOK_URL_FINAL,
        selectors=FlowSelectors.from_overrides(SELECTOR_OVERRIDES, logger=logger),
    )
    result = service.run_purchase(
        Path(args.request), headless=args.headless, schedule=args.schedule, dry_run=args.dry_run
    )
    logger.info("Run %s finished: %s (log %s)", result["run_id"], result.get("status"), result.get("log_id"))
    if service.attended_session is not None:
        input("Browser left open for review. Press ENTER to close it... ")
        service.release_attended_session()
    return 0 if result.get("ok") else 1


def cmd_schedule(args: argparse.Namespace) -> int:
    dispatcher = PurchaseDispatcher(logger, headless=args.headless)
    if args.all:
        scheduled = dispatcher.schedule_pattern(Path.cwd(), DEFAULT_PATTERN)
    elif args.requests:
        scheduled = dispatcher.schedule_files(args.requests)
    else:
        scheduled = dispatcher.schedule_files([DEFAULT_REQUEST])
    if not scheduled:
        logger.error("Nothing scheduled")
        return 1
    dispatcher.join()
    return 0


def cmd_convert_form(args: argparse.Namespace) -> int:
    form_path = Path(args.form)
    try:
        request = PurchaseRequest.from_form_data(form_path.read_text(encoding="utf-8"))
    except OSError as err:
        logger.error("Could not read form data %s: %s", form_path, err)
        return 1
    except RequestLoadError as err:
        logger.error("%s", err)
        return 1
    out_path = write_purchase_request(request, args.output)
    logger.info("Purchase request written to %s", out_path)
    return 0


COMMANDS = {
    "run": cmd_run,
    "schedule": cmd_schedule,
    "convert-form": cmd_convert_form,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command != "convert-form":
        apply_timezone()
    return COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
