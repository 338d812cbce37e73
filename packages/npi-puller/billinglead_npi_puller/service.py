"""Ingestion entry points: registry sync, file uploads, pre-parsed rows and lead provisioning."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from billinglead_common.config import ApiSettings, RegistrySettings
from billinglead_common.models import (
    LeadProvisionResult,
    ProviderRecord,
    ReconcileResult,
    SearchParams,
    SyncRequest,
    SyncSummary,
    UploadSummary,
)
from billinglead_common.normalize import normalize_many
from billinglead_common.reconcile import ReconciliationEngine
from billinglead_common.storage import StorageClient
from billinglead_common.sync_progress import SyncProgressTracker, build_progress_key
from billinglead_npi_puller.npi_api_client import NPIClient
from billinglead_npi_puller.npi_file_upload import UploadRejectedError, parse_upload, read_upload_file

logger = logging.getLogger(__name__)

# Records per reconcile call (one existence query each)
RECONCILE_BATCH_SIZE = 500
MAX_ROWS_PER_REQUEST = 500
# Registry name search used when only a state is given
STATE_FALLBACK_LAST_NAME = "Smith*"


def build_search_params(request: SyncRequest, default_taxonomy: str = RegistrySettings.default_taxonomy) -> SearchParams:
    """
    Pick registry filters from a sync request.

    The registry refuses searches on enumeration type alone, so exactly one
    branch always adds a criterion: taxonomy > state + last name > state with a
    wildcard name > city > last name > the default taxonomy.
    """
    params = SearchParams(enumeration_type=request.enumeration_type or None)
    if request.taxonomy_description:
        params.taxonomy_description = request.taxonomy_description
    elif request.state and request.last_name:
        params.state = request.state
        params.last_name = request.last_name
    elif request.state:
        params.state = request.state
        params.last_name = STATE_FALLBACK_LAST_NAME
    elif request.city:
        params.city = request.city
    elif request.last_name:
        params.last_name = request.last_name
    else:
        logger.info("No search criteria given, using default taxonomy %r", default_taxonomy)
        params.taxonomy_description = default_taxonomy
    return params


def progress_message(last_skip: int, total_available: int) -> str:
    if total_available <= 0:
        return "No providers available for this search"
    if last_skip >= total_available:
        return f"Sync complete: all {total_available:,} providers fetched"
    percent = last_skip / total_available * 100
    return f"Fetched {last_skip:,} of {total_available:,} providers ({percent:.1f}%). Run sync again to continue."


class IngestionService:
    """Coordinates source -> normalizer -> reconciliation (-> progress tracker)."""

    def __init__(
        self,
        storage: StorageClient,
        client: Optional[NPIClient] = None,
        registry_settings: Optional[RegistrySettings] = None,
        api_settings: Optional[ApiSettings] = None,
    ):
        self.storage = storage
        self.registry_settings = registry_settings or (client.settings if client else RegistrySettings.from_environment())
        self.api_settings = api_settings or ApiSettings.from_environment()
        self.client = client or NPIClient(self.registry_settings)
        self.engine = ReconciliationEngine(storage)
        self.tracker = SyncProgressTracker(storage)

    async def _reconcile_in_batches(
        self, records: Sequence[ProviderRecord], create_leads_for_existing: bool = False
    ) -> ReconcileResult:
        result = ReconcileResult()
        for start in range(0, len(records), RECONCILE_BATCH_SIZE):
            batch = records[start:start + RECONCILE_BATCH_SIZE]
            result = result.merge(
                await self.engine.reconcile(batch, create_leads_for_existing=create_leads_for_existing)
            )
        return result

    async def sync_from_registry(self, request: SyncRequest) -> SyncSummary:
        params = build_search_params(request, self.registry_settings.default_taxonomy)
        key = build_progress_key(params)

        cursor = await self.tracker.load(key) if request.resume else None
        start_skip = cursor.last_skip if cursor else 0
        previously_fetched = cursor.total_fetched if cursor else 0
        logger.info("Syncing %s from skip=%d", key, start_skip)

        fetched = await self.client.fetch_all(
            params, max_records=request.max_records, start_skip=start_skip, page_limit=request.limit
        )

        if not fetched.providers:
            total_available = fetched.total_available
            if fetched.failed_skips:
                error = "Registry request failed. Try again later."
            elif start_skip > 0:
                # Resumed past the last record: nothing left to fetch for this search
                error = None
                total_available = total_available or cursor.total_available
                await self.tracker.save(key, start_skip, previously_fetched, total_available)
            else:
                error = "No providers found. Try different search criteria."
            return SyncSummary(
                success=error is None,
                total_available=total_available,
                last_fetched_skip=fetched.last_skip,
                is_complete=error is None,
                progress_message=progress_message(fetched.last_skip, total_available) if error is None else error,
                error=error,
            )

        records = normalize_many(fetched.providers)
        result = await self._reconcile_in_batches(records, request.create_leads_for_existing)

        total_fetched = previously_fetched + (fetched.last_skip - start_skip)
        await self.tracker.save(key, fetched.last_skip, total_fetched, fetched.total_available)

        is_complete = fetched.last_skip >= fetched.total_available
        message = progress_message(fetched.last_skip, fetched.total_available)
        logger.info("Sync %s: %d added, %d updated. %s", key, result.added, result.updated, message)
        return SyncSummary(
            success=True,
            added=result.added,
            updated=result.updated,
            total=len(fetched.providers),
            leads_created=result.leads_created,
            total_available=fetched.total_available,
            last_fetched_skip=fetched.last_skip,
            is_complete=is_complete,
            progress_message=message,
        )

    async def ingest_upload(
        self, filename: str, content: bytes, create_leads_for_existing: bool = False
    ) -> UploadSummary:
        """Parse an uploaded file and reconcile each contained file separately."""
        parsed = await asyncio.to_thread(parse_upload, filename, content, self.api_settings.max_upload_bytes)

        totals = ReconcileResult()
        for source in parsed.sources:
            records = normalize_many(source.rows)
            if not records:
                logger.info("No usable rows in %s", source.name)
                continue
            result = await self._reconcile_in_batches(records, create_leads_for_existing)
            logger.info("%s: %d added, %d updated", source.name, result.added, result.updated)
            totals = totals.merge(result)

        errors = parsed.errors or None
        if totals.processed == 0:
            return UploadSummary(
                success=False,
                error="No provider rows with an NPI were found in the upload",
                errors=errors,
            )
        return UploadSummary(
            success=True,
            message=f"Import completed: {totals.added} added, {totals.updated} updated, {totals.processed} processed",
            added=totals.added,
            updated=totals.updated,
            total_processed=totals.processed,
            errors=errors,
        )

    async def ingest_upload_path(self, path: Path, create_leads_for_existing: bool = False) -> UploadSummary:
        content = await read_upload_file(path)
        return await self.ingest_upload(Path(path).name, content, create_leads_for_existing)

    async def ingest_rows(self, rows: List[Dict[str, Any]]) -> UploadSummary:
        """Rows already parsed client-side; capped per request to keep bodies small."""
        if not rows:
            raise UploadRejectedError('Missing or empty "rows" array')
        if len(rows) > MAX_ROWS_PER_REQUEST:
            raise UploadRejectedError(f"Max {MAX_ROWS_PER_REQUEST} rows per request")

        records = normalize_many(rows)
        if not records:
            return UploadSummary(success=False, error="No rows with an NPI were provided")
        result = await self.engine.reconcile(records)
        return UploadSummary(
            success=True,
            message=f"Import completed: {result.added} added, {result.updated} updated, {result.processed} processed",
            added=result.added,
            updated=result.updated,
            total_processed=result.processed,
        )

    async def save_leads(
        self, provider_ids: Optional[Sequence[int]] = None, save_all: bool = False
    ) -> LeadProvisionResult:
        """Create NEW leads for providers that have none."""
        if save_all:
            return await self.engine.provision_missing_leads()
        if provider_ids is None:
            raise ValueError("provider_ids is required unless save_all is set")
        return await self.engine.provision_missing_leads(provider_ids)
