"""CLI entry point for the table exporter."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from exporter.config import get_config
from exporter.exceptions import BadRequestError, ConfigurationError, ExporterError, RestartExportError
from exporter.logging_utils import get_logger, setup_logging
from exporter.models import ExportRequest, UploadSchemaKey
from exporter.pipeline import run_export
from exporter.table_service import TableServiceClient

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_BAD_REQUEST = 2
# EX_TEMPFAIL: the caller should resubmit the run.
EXIT_REDRIVE = 75
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Export health data records into remote tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m exporter.cli --date 2024-01-08
  python -m exporter.cli --start-datetime 2024-01-08T00:00:00Z --end-datetime 2024-01-08T06:00:00Z --study my-study
  python -m exporter.cli --record-id-override redrive/2024-01-08.txt --tag manual-redrive
  python -m exporter.cli --request-json request.json
  python -m exporter.cli --check-destination
        """,
    )

    parser.add_argument("--date", type=str, help="Export records uploaded on this date (YYYY-MM-DD)")
    parser.add_argument("--start-datetime", type=str, help="Start of upload window (ISO 8601)")
    parser.add_argument("--end-datetime", type=str, help="End of upload window, exclusive (ISO 8601)")
    parser.add_argument("--record-id-override", type=str, help="ADLS path of a file with one record ID per line")
    parser.add_argument("--study", action="append", dest="studies", help="Only export this study (repeatable)")
    parser.add_argument(
        "--table",
        action="append",
        dest="tables",
        help="Only export this upload schema, as STUDY:SCHEMA:REVISION (repeatable)",
    )
    parser.add_argument("--sharing-mode", choices=["SHARED", "PUBLIC_ONLY", "ALL"], default=None)
    parser.add_argument("--tag", type=str, help="Free-form tag included in every log line of the run")
    parser.add_argument("--redrive-count", type=int, default=None, help="How many times this run was resubmitted")
    parser.add_argument("--request-json", type=str, help="Read the whole request from a JSON file")
    parser.add_argument("--check-destination", action="store_true", help="Check the table service is writable and exit")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO")
    parser.add_argument("--log-format", choices=["json", "text"], default="json")

    parsed = parser.parse_args(argv)

    if parsed.request_json and (parsed.date or parsed.start_datetime or parsed.end_datetime or parsed.record_id_override):
        parser.error("--request-json can't be combined with --date, --start/end-datetime or --record-id-override")

    return parsed


def build_request(args: argparse.Namespace) -> ExportRequest:
    """Build the run request from --request-json or from the individual flags."""
    if args.request_json:
        try:
            text = Path(args.request_json).read_text(encoding="utf-8")
        except OSError as e:
            raise BadRequestError(f"Can't read request file: {e}", details={"path": args.request_json}) from e
        return ExportRequest.from_json(text)

    payload: dict = {}
    if args.date:
        payload["date"] = args.date
    if args.start_datetime:
        payload["startDateTime"] = args.start_datetime
    if args.end_datetime:
        payload["endDateTime"] = args.end_datetime
    if args.record_id_override:
        payload["recordIdOverride"] = args.record_id_override
    if args.studies:
        payload["studyWhitelist"] = args.studies
    if args.tables:
        try:
            keys = [UploadSchemaKey.parse(t) for t in args.tables]
        except ValueError as e:
            raise BadRequestError(f"Invalid --table: {e}") from e
        payload["tableWhitelist"] = [k.model_dump(by_alias=True) for k in keys]
    if args.sharing_mode:
        payload["sharingMode"] = args.sharing_mode
    if args.tag:
        payload["tag"] = args.tag
    if args.redrive_count is not None:
        payload["redriveCount"] = args.redrive_count
    return ExportRequest.from_json(json.dumps(payload))


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI execution."""
    args = parse_args(argv)
    setup_logging(level=args.log_level, json_format=(args.log_format == "json"))

    try:
        config = get_config()

        if args.check_destination:
            writable = TableServiceClient(config).is_writable()
            logger.info("Destination check " + ("passed" if writable else "failed"))
            return EXIT_OK if writable else EXIT_FAILED

        request = build_request(args)
        task = run_export(request, config=config)
        logger.info(
            "Export run succeeded",
            extra={"run_id": task.task_id, "request": str(request), "metrics": task.metrics.to_dict()},
        )
        return EXIT_OK

    except BadRequestError as e:
        logger.error(f"Bad request: {e}")
        return EXIT_BAD_REQUEST
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_FAILED
    except RestartExportError as e:
        logger.error(f"Export run must be resubmitted: {e}")
        return EXIT_REDRIVE
    except ExporterError as e:
        logger.error(f"Export failed: {e}")
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Export interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
