"""Shared Pydantic models."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Accepts snake_case or camelCase input, serializes camelCase by alias."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProviderRecord(BaseModel):
    """Canonical provider shape every ingestion source is normalized into."""

    npi: str = Field(..., min_length=1, description="National Provider Identifier")
    enumeration_type: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_name: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    taxonomy: Optional[str] = None
    primary_address: Optional[str] = None
    mailing_address: Optional[str] = None
    raw_data: str = "{}"

    def create_values(self) -> Dict[str, Any]:
        """Column values for a brand new provider row."""
        values = self.model_dump()
        values["enumeration_type"] = self.enumeration_type or "NPI-1"
        values["primary_address"] = self.primary_address or "{}"
        values["mailing_address"] = self.mailing_address or "{}"
        return values

    def update_values(self) -> Dict[str, Any]:
        """Column values for an existing row; unknown (None) fields keep their stored value."""
        values = self.model_dump(exclude_none=True)
        values.pop("npi", None)
        return values


class SearchParams(BaseModel):
    """Registry search filters. ``enumeration_type`` alone is not a valid search."""

    enumeration_type: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_name: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    taxonomy_description: Optional[str] = None

    def has_criteria(self) -> bool:
        return any(
            value for key, value in self.model_dump().items() if key != "enumeration_type"
        )

    def to_query(self) -> Dict[str, str]:
        return {key: str(value) for key, value in self.model_dump().items() if value not in (None, "")}


class SyncRequest(CamelModel):
    enumeration_type: str = "NPI-1"
    state: Optional[str] = None
    city: Optional[str] = None
    last_name: Optional[str] = None
    taxonomy_description: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1)
    max_records: Optional[int] = Field(None, ge=1)
    resume: bool = True
    create_leads_for_existing: bool = False


class ReconcileResult(CamelModel):
    added: int = 0
    updated: int = 0
    processed: int = 0
    duplicates: int = 0
    leads_created: int = 0

    def merge(self, other: "ReconcileResult") -> "ReconcileResult":
        return ReconcileResult(
            added=self.added + other.added,
            updated=self.updated + other.updated,
            processed=self.processed + other.processed,
            duplicates=self.duplicates + other.duplicates,
            leads_created=self.leads_created + other.leads_created,
        )


class LeadProvisionResult(CamelModel):
    success: bool = True
    saved: int = 0
    duplicates: int = 0
    total: int = 0


class UploadSummary(CamelModel):
    success: bool = True
    message: Optional[str] = None
    added: int = 0
    updated: int = 0
    total_processed: int = 0
    errors: Optional[List[str]] = None
    error: Optional[str] = None


class SyncSummary(CamelModel):
    success: bool = True
    added: int = 0
    updated: int = 0
    total: int = 0
    leads_created: int = 0
    total_available: int = 0
    last_fetched_skip: int = 0
    is_complete: bool = False
    progress_message: str = ""
    error: Optional[str] = None


class RowsUploadRequest(CamelModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class SaveLeadsRequest(CamelModel):
    provider_ids: Optional[List[int]] = None
    save_all: bool = False
