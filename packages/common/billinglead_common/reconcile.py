"""Batch upsert of canonical provider records with lead provisioning."""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update

from billinglead_common.database import Lead, LeadStatus, Provider
from billinglead_common.models import LeadProvisionResult, ProviderRecord, ReconcileResult
from billinglead_common.storage import StorageClient

logger = logging.getLogger(__name__)

# Upper bound on statements per transaction, to stay under backend payload limits
CREATE_CHUNK_SIZE = 50
UPDATE_CHUNK_SIZE = 50
LEAD_CHUNK_SIZE = 50


def dedupe_by_npi(records: Sequence[ProviderRecord]) -> Tuple[List[ProviderRecord], int]:
    """Keep one record per NPI (last occurrence wins). Returns the records and how many were dropped."""
    by_npi: Dict[str, ProviderRecord] = {}
    for record in records:
        by_npi[record.npi] = record
    return list(by_npi.values()), len(records) - len(by_npi)


def _chunks(items: Sequence, size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class ReconciliationEngine:
    """
    Classifies a batch of records as new or existing by NPI and applies them.

    New providers are inserted together with a NEW lead inside the same
    transaction. Each chunk commits on its own: a failing chunk rolls back only
    itself and the error propagates to the caller.
    """

    def __init__(self, storage: StorageClient):
        self.storage = storage

    async def find_existing(self, npis: Sequence[str]) -> Dict[str, int]:
        """Map each NPI that is already stored to its provider id, in one query."""
        if not npis:
            return {}
        async with self.storage.session() as session:
            rows = await session.execute(
                select(Provider.npi, Provider.id).where(Provider.npi.in_(list(npis)))
            )
            return {npi: provider_id for npi, provider_id in rows}

    async def reconcile(
        self,
        records: Sequence[ProviderRecord],
        create_leads_for_existing: bool = False,
    ) -> ReconcileResult:
        unique, duplicates = dedupe_by_npi(records)
        if duplicates:
            logger.info("Dropped %d duplicate NPI(s) within batch", duplicates)
        if not unique:
            return ReconcileResult(duplicates=duplicates)

        existing = await self.find_existing([record.npi for record in unique])
        to_create = [record for record in unique if record.npi not in existing]
        to_update = [(existing[record.npi], record) for record in unique if record.npi in existing]

        added = 0
        for number, chunk in enumerate(_chunks(to_create, CREATE_CHUNK_SIZE), start=1):
            async with self.storage.transaction() as session:
                session.add_all([self._new_provider(record) for record in chunk])
            added += len(chunk)
            logger.debug("Created chunk %d (%d providers)", number, len(chunk))

        updated = 0
        for number, chunk in enumerate(_chunks(to_update, UPDATE_CHUNK_SIZE), start=1):
            async with self.storage.transaction() as session:
                for provider_id, record in chunk:
                    await session.execute(
                        update(Provider)
                        .where(Provider.id == provider_id)
                        .values(**record.update_values())
                    )
            updated += len(chunk)
            logger.debug("Updated chunk %d (%d providers)", number, len(chunk))

        leads_created = added
        if create_leads_for_existing and to_update:
            leads_created += await self._create_missing_leads([provider_id for provider_id, _ in to_update])

        logger.info(
            "Reconciled %d record(s): %d added, %d updated, %d lead(s) created",
            len(unique), added, updated, leads_created,
        )
        return ReconcileResult(
            added=added,
            updated=updated,
            processed=len(unique),
            duplicates=duplicates,
            leads_created=leads_created,
        )

    async def provision_missing_leads(self, provider_ids: Optional[Sequence[int]] = None) -> LeadProvisionResult:
        """Give a NEW lead to every listed provider (or every provider) that has none."""
        if provider_ids is None:
            async with self.storage.session() as session:
                total = await session.scalar(select(func.count(Provider.id))) or 0
                missing = list(await session.scalars(
                    select(Provider.id).where(~Provider.leads.any()).order_by(Provider.id)
                ))
            saved = await self._insert_leads(missing)
        else:
            async with self.storage.session() as session:
                known = list(await session.scalars(
                    select(Provider.id).where(Provider.id.in_(list(provider_ids)))
                ))
            total = len(known)
            saved = await self._create_missing_leads(known)
        return LeadProvisionResult(saved=saved, duplicates=total - saved, total=total)

    async def _create_missing_leads(self, provider_ids: Sequence[int]) -> int:
        if not provider_ids:
            return 0
        async with self.storage.session() as session:
            with_lead = set(await session.scalars(
                select(Lead.provider_id).where(Lead.provider_id.in_(list(provider_ids))).distinct()
            ))
        missing = [pid for pid in dict.fromkeys(provider_ids) if pid not in with_lead]
        return await self._insert_leads(missing)

    async def _insert_leads(self, provider_ids: Sequence[int]) -> int:
        for chunk in _chunks(provider_ids, LEAD_CHUNK_SIZE):
            async with self.storage.transaction() as session:
                session.add_all([Lead(provider_id=pid, status=LeadStatus.NEW) for pid in chunk])
        return len(provider_ids)

    @staticmethod
    def _new_provider(record: ProviderRecord) -> Provider:
        return Provider(**record.create_values(), leads=[Lead(status=LeadStatus.NEW)])
