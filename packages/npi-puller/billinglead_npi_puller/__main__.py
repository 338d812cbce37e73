import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from billinglead_common.log import configure_logging
from billinglead_common.models import SyncRequest, SyncSummary, UploadSummary
from billinglead_common.storage import StorageClient
from billinglead_npi_puller.npi_file_upload import UploadRejectedError
from billinglead_npi_puller.service import IngestionService


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m billinglead_npi_puller",
        description="Pull NPPES providers into the lead database",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync = subparsers.add_parser("sync", help="Sync providers from the NPPES registry API")
    sync.add_argument("--taxonomy", dest="taxonomy_description", help="Taxonomy / specialty description")
    sync.add_argument("--state", help="Two-letter state code")
    sync.add_argument("--city")
    sync.add_argument("--last-name")
    sync.add_argument("--enumeration-type", default="NPI-1", choices=["NPI-1", "NPI-2"])
    sync.add_argument("--max-records", type=int, help="Stop after this many records (default: all)")
    sync.add_argument("--limit", type=int, help="Page size per registry request (max 200, default: NPI_PAGE_LIMIT)")
    sync.add_argument("--restart", action="store_true", help="Ignore saved progress and start from the first record")
    sync.add_argument("--leads-for-existing", action="store_true", help="Also create leads for updated providers without one")

    upload = subparsers.add_parser("upload", help="Import a CSV, spreadsheet or ZIP of CSVs")
    upload.add_argument("path", type=Path)
    upload.add_argument("--leads-for-existing", action="store_true")

    save = subparsers.add_parser("save-leads", help="Create NEW leads for providers that have none")
    save.add_argument("provider_ids", nargs="*", type=int)

    return parser.parse_args(argv)


def print_sync_summary(summary: SyncSummary) -> None:
    print(f"\n{'='*60}")
    print("REGISTRY SYNC COMPLETE" if summary.success else "REGISTRY SYNC FAILED")
    print(f"{'='*60}")
    if summary.error:
        print(f"❌ {summary.error}")
    print(f"✅ Added: {summary.added}  Updated: {summary.updated}  Fetched: {summary.total}")
    print(f"🧾 Leads created: {summary.leads_created}")
    print(f"📊 {summary.progress_message}")
    print(f"{'='*60}\n")


def print_upload_summary(summary: UploadSummary) -> None:
    print(f"\n{'='*60}")
    print("UPLOAD COMPLETE" if summary.success else "UPLOAD FAILED")
    print(f"{'='*60}")
    if summary.error:
        print(f"❌ {summary.error}")
    print(f"✅ Added: {summary.added}  Updated: {summary.updated}  Processed: {summary.total_processed}")
    for error in summary.errors or []:
        print(f"⚠️  {error}")
    print(f"{'='*60}\n")


async def run(args: argparse.Namespace) -> int:
    async with StorageClient() as storage:
        service = IngestionService(storage)

        if args.command == "sync":
            request = SyncRequest(
                enumeration_type=args.enumeration_type,
                state=args.state,
                city=args.city,
                last_name=args.last_name,
                taxonomy_description=args.taxonomy_description,
                limit=args.limit,
                max_records=args.max_records,
                resume=not args.restart,
                create_leads_for_existing=args.leads_for_existing,
            )
            summary = await service.sync_from_registry(request)
            print_sync_summary(summary)
            return 0 if summary.success else 1

        if args.command == "upload":
            summary = await service.ingest_upload_path(args.path, args.leads_for_existing)
            print_upload_summary(summary)
            return 0 if summary.success else 1

        provider_ids: Optional[List[int]] = args.provider_ids or None
        result = await service.save_leads(provider_ids, save_all=provider_ids is None)
        print(f"✅ Saved {result.saved} lead(s), {result.duplicates} provider(s) already had one ({result.total} checked)")
        return 0


def main(argv: Optional[Sequence[str]] = None) -> None:
    """
    CLI entry point.

    Usage:
        python -m billinglead_npi_puller sync --taxonomy "Family Medicine"
        python -m billinglead_npi_puller upload providers.zip
        python -m billinglead_npi_puller save-leads
    """
    configure_logging()
    args = parse_args(sys.argv[1:] if argv is None else argv)
    try:
        sys.exit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        print("\n⚠️  Ingestion interrupted by user")
        sys.exit(130)
    except (UploadRejectedError, FileNotFoundError) as e:
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
