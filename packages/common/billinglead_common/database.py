"""Database schemas and models."""

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LeadStatus(str, enum.Enum):
    NEW = "NEW"
    CONTACTED = "CONTACTED"
    INTERESTED = "INTERESTED"
    NOT_INTERESTED = "NOT_INTERESTED"
    FOLLOW_UP = "FOLLOW_UP"
    CONVERTED = "CONVERTED"
    DO_NOT_CALL = "DO_NOT_CALL"


class ContactType(str, enum.Enum):
    CALL = "CALL"
    EMAIL = "EMAIL"
    BOTH = "BOTH"


class Provider(Base):
    """One row per NPI. Re-ingesting an NPI updates this row in place."""

    __tablename__ = "providers"

    id = Column(Integer, primary_key=True, index=True)
    npi = Column(String(20), unique=True, index=True, nullable=False)
    enumeration_type = Column(String(10), nullable=False, default="NPI-1")
    first_name = Column(String(100))
    last_name = Column(String(100))
    organization_name = Column(String(255))
    city = Column(String(100))
    state = Column(String(50))
    postal_code = Column(String(20))
    phone = Column(String(50))
    email = Column(String(255))
    taxonomy = Column(String(255))
    # JSON blobs kept for audit; only city/state/postal_code are flattened
    primary_address = Column(Text, nullable=False, default="{}")
    mailing_address = Column(Text, nullable=False, default="{}")
    raw_data = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    leads = relationship("Lead", back_populates="provider", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Provider(npi={self.npi}, type={self.enumeration_type})>"


class Lead(Base):
    """Sales pipeline state for a provider.

    The schema allows several leads per provider; ingestion only ever creates
    one, and treats "provider has any lead" as the existence check.
    """

    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(
        Integer, ForeignKey("providers.id", ondelete="CASCADE"), index=True, nullable=False
    )
    status = Column(Enum(LeadStatus, name="lead_status"), nullable=False, default=LeadStatus.NEW)
    notes = Column(Text)
    last_contacted_at = Column(DateTime(timezone=True))
    last_contact_type = Column(Enum(ContactType, name="contact_type"))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    provider = relationship("Provider", back_populates="leads")

    def __repr__(self):
        return f"<Lead(provider_id={self.provider_id}, status={self.status})>"


class SyncProgress(Base):
    """Resumable registry cursor for one distinct search configuration."""

    __tablename__ = "sync_progress"

    id = Column(Integer, primary_key=True, index=True)
    search_key = Column(String(512), unique=True, index=True, nullable=False)
    last_fetched_skip = Column(Integer, nullable=False, default=0)
    total_fetched = Column(Integer, nullable=False, default=0)
    total_available = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<SyncProgress(key={self.search_key}, skip={self.last_fetched_skip})>"
