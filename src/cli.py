"""Command-line interface for local document ingestion and review.

Runs the same :class:`ReviewService` as the API against a SQLite
database, so records persist between invocations. Subcommands cover
ingesting files or folders, inspecting records, the reviewer actions
and exporting results to CSV.
"""

import argparse
import csv
import json
import mimetypes
import sys
from pathlib import Path

from src.errors import OCRWorkflowError
from src.models import DocumentType, OCRData
from src.records.ledger import InMemoryLedger
from src.utils.config import AppConfig, load_config
from src.utils.logger import get_logger, setup_logging
from src.workflow.service import ReviewService, build_service

logger = get_logger(__name__)

_SUPPORTED_EXTENSIONS = ("*.png", "*.jpg", "*.jpeg", "*.webp", "*.tiff", "*.tif", "*.pdf")
_META_COLUMNS = [
    "id",
    "filename",
    "document_type",
    "status",
    "confidence",
    "needs_review",
    "is_duplicate",
    "error",
]


def _find_documents(input_path: Path) -> list[Path]:
    """Return ``input_path`` itself, or the supported files in a directory.

    Args:
        input_path: File or directory to scan for documents.

    Returns:
        Sorted list of document file paths.
    """
    if input_path.is_file():
        return [input_path]
    files: list[Path] = []
    for ext in _SUPPORTED_EXTENSIONS:
        files.extend(input_path.glob(ext))
        files.extend(input_path.glob(ext.upper()))
    return sorted(set(files))


def make_service(
    config: AppConfig,
    db_path: Path | None = None,
    party_names: list[str] | None = None,
    user_id: str = "local",
) -> ReviewService:
    """Build a SQLite-backed service, seeding the ledger with known names."""
    config.storage.backend = "sqlite"
    if db_path is not None:
        config.storage.db_path = str(db_path)
    ledger = InMemoryLedger()
    for name in party_names or []:
        ledger.add_party(user_id, name)
        ledger.add_customer(user_id, name)
    return build_service(config, ledger=ledger)


def ingest(
    service: ReviewService,
    input_path: Path,
    document_type: str,
    user_id: str,
    verbose: bool = False,
) -> dict[str, int]:
    """Upload every document under ``input_path`` and wait for processing.

    Returns:
        Count of documents per final status, plus ``total`` and ``rejected``
        for uploads that failed validation.
    """
    files = _find_documents(input_path)
    if not files:
        logger.warning("No documents found in %s", input_path)
        return {"total": 0}

    logger.info("Found %d documents to ingest", len(files))
    ids: list[str] = []
    rejected = 0
    for i, file_path in enumerate(files, 1):
        if verbose:
            print(f"Uploading [{i}/{len(files)}]: {file_path.name}")
        content_type, _ = mimetypes.guess_type(file_path.name)
        try:
            record = service.upload(
                file_path.read_bytes(),
                document_type,
                user_id,
                file_path.name,
                content_type=content_type,
            )
            ids.append(record.id)
        except OCRWorkflowError as exc:
            logger.error("Rejected %s: %s", file_path.name, exc)
            rejected += 1

    service.worker.wait_all()

    summary: dict[str, int] = {"total": len(files), "rejected": rejected}
    for ocr_id in ids:
        status = service.get(ocr_id).status.value
        summary[status] = summary.get(status, 0) + 1
        if verbose:
            print(f"{ocr_id}  {status}")
    return summary


def _export_row(record: OCRData) -> dict[str, object]:
    extracted = record.extracted_data
    row: dict[str, object] = {
        "id": record.id,
        "filename": record.original_name,
        "document_type": record.document_type.value,
        "status": record.status.value,
        "confidence": round(record.confidence, 3),
        "needs_review": bool(extracted.get("lowConfidenceFields") or extracted.get("invalidFields")),
        "is_duplicate": bool(extracted.get("duplicateCheck", {}).get("isDuplicate")),
        "error": record.error_message,
    }
    row.update(record.processed_data or {})
    return row


def export_csv(service: ReviewService, user_id: str, output_path: Path) -> int:
    """Write every record of ``user_id`` to a CSV file.

    Returns:
        Number of rows written.
    """
    records, _ = service.repository.query(user_id)
    _write_csv([_export_row(r) for r in records], output_path)
    logger.info("Exported %d records to %s", len(records), output_path)
    return len(records)


def _write_csv(results: list[dict[str, object]], output_path: Path) -> None:
    """Write result rows to a CSV file, metadata columns first.

    Args:
        results: List of row dictionaries.
        output_path: Path for the output CSV file.
    """
    if not results:
        return

    all_keys: set[str] = set()
    for r in results:
        all_keys.update(r.keys())

    field_columns = sorted(all_keys - set(_META_COLUMNS))
    columns = [c for c in _META_COLUMNS if c in all_keys] + field_columns

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, extrasaction="ignore")
        writer.writeheader()
        writer.writerows(results)


def _print_summary(summary: dict[str, int]) -> None:
    """Print ingestion summary to stdout."""
    print(f"\n{'=' * 50}")
    print("Ingestion Complete")
    print(f"{'=' * 50}")
    for key, count in summary.items():
        print(f"{key + ':':<15} {count}")


def _print_json(data: object) -> None:
    print(json.dumps(data, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Document OCR review pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, help="YAML configuration file")
    parser.add_argument("--db", type=Path, help="SQLite database (default from config)")
    parser.add_argument("-u", "--user", default="local", help="Owner id (default: local)")
    parser.add_argument(
        "--party",
        action="append",
        default=[],
        help="Known party/customer name; may be repeated",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    ingest_parser = subparsers.add_parser("ingest", help="Upload a file or folder of documents")
    ingest_parser.add_argument("input", type=Path, help="Document file or directory")
    ingest_parser.add_argument(
        "-t",
        "--type",
        choices=[t.value for t in DocumentType],
        default=DocumentType.INVOICE.value,
        dest="doc_type",
        help="Document type (default: invoice)",
    )
    ingest_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    show_parser = subparsers.add_parser("show", help="Show one document with diagnostics")
    show_parser.add_argument("ocr_id")

    list_parser = subparsers.add_parser("list", help="List documents")
    list_parser.add_argument("--status", help="Filter by status")
    list_parser.add_argument("--page", type=int, default=1)
    list_parser.add_argument("--limit", type=int, default=20)

    review_parser = subparsers.add_parser("review", help="Correct fields of a document")
    review_parser.add_argument("ocr_id")
    review_parser.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="FIELD=VALUE",
        help="Corrected field value; may be repeated",
    )
    review_parser.add_argument("--notes")
    review_parser.add_argument("--accept-duplicate", action="store_true", default=None)

    approve_parser = subparsers.add_parser("approve", help="Approve a document")
    approve_parser.add_argument("ocr_id")
    approve_parser.add_argument(
        "--create-record", action="store_true", help="Create the financial record"
    )

    reject_parser = subparsers.add_parser("reject", help="Reject a document")
    reject_parser.add_argument("ocr_id")
    reject_parser.add_argument("--reason", required=True)

    retry_parser = subparsers.add_parser("retry", help="Reprocess a failed document")
    retry_parser.add_argument("ocr_id")

    delete_parser = subparsers.add_parser("delete", help="Delete an unlinked document")
    delete_parser.add_argument("ocr_id")

    export_parser = subparsers.add_parser("export", help="Export documents to CSV")
    export_parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path("results.csv"),
        help="Output CSV file (default: results.csv)",
    )

    subparsers.add_parser("analytics", help="Show processing statistics for this month")
    return parser


def _parse_assignments(pairs: list[str]) -> dict[str, str]:
    corrected = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Expected FIELD=VALUE, got {pair!r}")
        corrected[name.strip()] = value.strip()
    return corrected


def main(argv: list[str] | None = None) -> None:
    """Parse CLI arguments and dispatch to the appropriate command.

    Args:
        argv: Command-line arguments (defaults to sys.argv).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    config = load_config(args.config)
    setup_logging(config.log_level)
    service = make_service(config, args.db, args.party, args.user)

    try:
        if args.command == "ingest":
            if not args.input.exists():
                print(f"Error: {args.input} does not exist", file=sys.stderr)
                sys.exit(1)
            _print_summary(ingest(service, args.input, args.doc_type, args.user, args.verbose))
        elif args.command == "show":
            _print_json(service.status_view(args.ocr_id, args.user))
        elif args.command == "list":
            _print_json(
                service.list_documents(
                    args.user, status=args.status, page=args.page, limit=args.limit
                )
            )
        elif args.command == "review":
            record = service.review(
                args.ocr_id,
                _parse_assignments(args.set),
                notes=args.notes,
                reviewer=args.user,
                accept_duplicate=args.accept_duplicate,
                user_id=args.user,
            )
            _print_json(record.to_dict())
        elif args.command == "approve":
            result = service.approve(
                args.ocr_id,
                create_record=args.create_record,
                approver=args.user,
                user_id=args.user,
            )
            _print_json(result.to_dict())
        elif args.command == "reject":
            _print_json(service.reject(args.ocr_id, args.reason, args.user, args.user).to_dict())
        elif args.command == "retry":
            service.retry(args.ocr_id, args.user)
            service.worker.wait_all()
            _print_json(service.status_view(args.ocr_id, args.user))
        elif args.command == "delete":
            service.delete(args.ocr_id, args.user)
            print(f"Deleted {args.ocr_id}")
        elif args.command == "export":
            count = export_csv(service, args.user, args.output)
            print(f"Exported {count} documents to {args.output}")
        elif args.command == "analytics":
            _print_json(service.analytics(args.user))
    except (OCRWorkflowError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        service.close()


if __name__ == "__main__":
    main()
