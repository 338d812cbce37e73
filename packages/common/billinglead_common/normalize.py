"""
Map heterogeneous provider inputs onto ``ProviderRecord``.

Two shapes come in: registry API results (nested ``basic`` / ``addresses`` /
``taxonomies`` / ``endpoints`` blocks) and flat rows from CSV, spreadsheet,
archive or JSON uploads whose column names vary from file to file. Both the
upload parser and the registry sync use this module.
"""

import json
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from billinglead_common.database import Provider
from billinglead_common.models import ProviderRecord

# Headers are trimmed and inner whitespace collapsed to "_" before matching
HEADER_ALIASES = [
    ("npi", re.compile(r"^(npi|npi_?number|npi_?no|national_provider_identifier|provider_npi|npi_?#)$", re.I)),
    ("first_name", re.compile(r"^(first_?name|fname|given_?name|provider_first_name)$", re.I)),
    ("last_name", re.compile(r"^(last_?name|lname|family_?name|surname|provider_last_name)$", re.I)),
    (
        "organization_name",
        re.compile(
            r"^(organization_?name|organization|org_?name|org|practice_?name|business_?name"
            r"|provider_organization_name(_\(legal_business_name\))?)$",
            re.I,
        ),
    ),
    ("postal_code", re.compile(r"^(postal_?code|postal|zip|zip_?code|zipcode)$", re.I)),
    ("taxonomy", re.compile(r"^(taxonomy|taxonomy_?desc(ription)?|specialty|speciality)$", re.I)),
    ("city", re.compile(r"^(city|city_?name)$", re.I)),
    ("state", re.compile(r"^(state|state_?code|state_?name)$", re.I)),
    ("phone", re.compile(r"^(phone|phone_?number|telephone|telephone_?number|tel)$", re.I)),
    ("email", re.compile(r"^(email|e-?mail_?address|email_?address)$", re.I)),
    ("enumeration_type", re.compile(r"^(enumeration_?type|npi_?type|entity_?type)$", re.I)),
]

EMAIL_ENDPOINT_TYPES = {"EMAIL", "DIRECT"}

_SPREADSHEET_INTEGER = re.compile(r"^(\d+)\.0+$")

MAX_LENGTHS = {
    column.name: column.type.length
    for column in Provider.__table__.columns
    if getattr(column.type, "length", None)
}


def truncate_fields(values: Dict[str, Any]) -> Dict[str, Any]:
    """Clip string values to the width of their provider column."""
    for key, max_len in MAX_LENGTHS.items():
        value = values.get(key)
        if isinstance(value, str) and len(value) > max_len:
            values[key] = value[:max_len]
    return values


def map_header_to_key(header: str) -> Optional[str]:
    """Return the canonical key for a column header, or None when it is not recognised."""
    if header is None:
        return None
    candidate = re.sub(r"\s+", "_", str(header).strip())
    for key, pattern in HEADER_ALIASES:
        if pattern.match(candidate):
            return key
    return None


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float):
        if value != value:  # NaN from pandas
            return None
        if value.is_integer():
            value = int(value)
    text = str(value).strip()
    if not text or text.lower() == "nan":
        return None
    return text


def _clean_identifier(value: Any) -> Optional[str]:
    text = _clean(value)
    if text is None:
        return None
    match = _SPREADSHEET_INTEGER.match(text)
    return match.group(1) if match else text


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def normalize_upload_row(row: Mapping[str, Any]) -> Optional[ProviderRecord]:
    """Normalize one flat upload row. Rows without an NPI are unusable and yield None."""
    mapped: Dict[str, Optional[str]] = {}
    for header, value in row.items():
        key = map_header_to_key(header)
        if key is None:
            continue
        cleaned = _clean_identifier(value) if key == "npi" else _clean(value)
        # First non-empty column wins when several headers alias the same key
        if mapped.get(key) is None:
            mapped[key] = cleaned

    npi = mapped.pop("npi", None)
    if not _usable_identifier(npi):
        return None

    address = {
        "city": mapped.get("city"),
        "state": mapped.get("state"),
        "postal_code": mapped.get("postal_code"),
    }
    has_address = any(address.values())

    return ProviderRecord(
        npi=npi,
        **truncate_fields(mapped),
        primary_address=_dumps(address) if has_address else None,
        raw_data=_dumps({str(k): _clean(v) for k, v in row.items()}),
    )


def _usable_identifier(npi: Optional[str]) -> bool:
    return bool(npi) and len(npi) <= MAX_LENGTHS["npi"]


def first_phone(primary: Mapping[str, Any], mailing: Mapping[str, Any], practice_locations: Iterable[Any]) -> Optional[str]:
    """Primary address phone, then mailing address, then the first practice location with one."""
    for address in (primary, mailing):
        phone = _clean(address.get("telephone_number"))
        if phone:
            return phone
    for location in practice_locations or []:
        if isinstance(location, Mapping):
            phone = _clean(location.get("telephone_number"))
            if phone:
                return phone
    return None


def first_email(endpoints: Iterable[Any]) -> Optional[str]:
    """First endpoint that looks like an address, or is declared as an email/direct endpoint."""
    for endpoint in endpoints or []:
        if not isinstance(endpoint, Mapping):
            continue
        value = _clean(endpoint.get("endpoint")) or _clean(endpoint.get("endpointLocation")) or ""
        if "@" in value:
            return value
        endpoint_type = (_clean(endpoint.get("endpointType")) or "").upper()
        if endpoint_type in EMAIL_ENDPOINT_TYPES and value:
            return value
    return None


def primary_taxonomy(taxonomies: List[Mapping[str, Any]]) -> str:
    """Description of the primary taxonomy, else the first one, else an empty string."""
    if not taxonomies:
        return ""
    chosen = next((t for t in taxonomies if t.get("primary")), taxonomies[0])
    return _clean(chosen.get("desc")) or ""


def _pick_address(addresses: List[Mapping[str, Any]], purpose: str, position: int) -> Dict[str, Any]:
    address = next((a for a in addresses if a.get("address_purpose") == purpose), None)
    if address is None and len(addresses) > position:
        address = addresses[position]
    return dict(address or {})


def normalize_registry_result(result: Mapping[str, Any]) -> Optional[ProviderRecord]:
    """Normalize one NPPES API result."""
    npi = _clean_identifier(result.get("number"))
    if not _usable_identifier(npi):
        return None

    basic = result.get("basic") or {}
    addresses = [a for a in (result.get("addresses") or []) if isinstance(a, Mapping)]
    primary = _pick_address(addresses, "LOCATION", 0)
    mailing = _pick_address(addresses, "MAILING", 1)

    fields = truncate_fields({
        "enumeration_type": _clean(result.get("enumeration_type")),
        "first_name": _clean(basic.get("first_name")),
        "last_name": _clean(basic.get("last_name")),
        "organization_name": _clean(basic.get("organization_name")) or _clean(basic.get("name")),
        "city": _clean(primary.get("city")),
        "state": _clean(primary.get("state")),
        "postal_code": _clean(primary.get("postal_code")),
        "phone": first_phone(primary, mailing, result.get("practiceLocations") or []),
        "email": first_email(result.get("endpoints") or []),
        "taxonomy": primary_taxonomy(result.get("taxonomies") or []) or None,
    })
    return ProviderRecord(
        npi=npi,
        **fields,
        primary_address=_dumps(primary),
        mailing_address=_dumps(mailing),
        raw_data=_dumps(result),
    )


def is_registry_result(raw: Mapping[str, Any]) -> bool:
    return "number" in raw and ("basic" in raw or "addresses" in raw or "taxonomies" in raw)


def normalize(raw: Mapping[str, Any]) -> Optional[ProviderRecord]:
    """Normalize any supported input; None when it carries no usable NPI."""
    if is_registry_result(raw):
        return normalize_registry_result(raw)
    return normalize_upload_row(raw)


def normalize_many(raws: Iterable[Mapping[str, Any]]) -> List[ProviderRecord]:
    """Normalize a sequence, silently dropping unusable inputs."""
    records = []
    for raw in raws:
        record = normalize(raw)
        if record is not None:
            records.append(record)
    return records
