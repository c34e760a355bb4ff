"""Glossary-driven selection of row fields expected to appear verbatim in a contract."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

REQUIRED = "Required"
OPTIONAL = "Optional"
NOT_NEEDED = "Not Needed"

ELIGIBLE_DATA_TYPES = frozenset({"text", "string", "address", "identifier"})

SUB_ADDRESS_FIELDS = frozenset(
    {
        "city",
        "state",
        "zip",
        "zipcode",
        "postal",
        "postalcode",
        "postal_code",
        "zip_code",
        "country",
    }
)

EMPTY_MARKERS = frozenset({"", "n/a", "na", "unknown", "empty", "-", "none"})
NA_VARIANTS = frozenset(
    {"n/a", "na", "not applicable", "not app", "not needed", "n.a.", "none", "null"}
)

# Number of leading sheet columns that identify the row rather than hold data.
NON_EDITABLE_COLUMNS = 2

_REQUIRED_STATUS_VOCAB: Tuple[Tuple[frozenset, str], ...] = (
    (frozenset({"required", "mandatory", "req", "must", "yes", "y"}), REQUIRED),
    (frozenset({"optional", "opt", "no", "n"}), OPTIONAL),
    (frozenset({"n/a", "na", "not needed", "not applicable", "none", "-"}), NOT_NEEDED),
)

_DATA_TYPE_VOCAB: Tuple[Tuple[frozenset, str], ...] = (
    (frozenset({"text", "string", "str", "varchar", "char"}), "text"),
    (frozenset({"number", "numeric", "num", "int", "integer", "float", "decimal"}), "number"),
    (frozenset({"date", "datetime", "timestamp", "time"}), "date"),
    (frozenset({"address", "addr", "location"}), "address"),
    (frozenset({"identifier", "id", "key", "uid", "uuid"}), "identifier"),
    (frozenset({"enum", "option", "select", "dropdown", "choice", "list"}), "enum"),
    (frozenset({"boolean", "bool", "flag", "yes/no"}), "boolean"),
)

_LIST_SPLIT = re.compile(r"[,;|\n]")


@dataclass(frozen=True)
class GlossaryEntry:
    field_key: str
    label: Optional[str] = None
    definition: Optional[str] = None
    required_status: Optional[str] = None
    data_type: Optional[str] = None
    allowed_values: Tuple[str, ...] = ()
    input_type: Optional[str] = None
    synonyms: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EligibleField:
    field_name: str
    value: str

    def to_dict(self) -> Dict[str, str]:
        return {"field_name": self.field_name, "value": self.value}


Glossary = Dict[str, GlossaryEntry]


def normalize_field_key(field_name: str) -> str:
    """Canonical glossary key: lowercase snake case without a ``__c`` suffix."""

    key = (field_name or "").lower().strip()
    key = re.sub(r"[\s-]+", "_", key)
    key = re.sub(r"_+", "_", key)
    key = re.sub(r"[^\w]", "", key)
    key = re.sub(r"(__c|_c)$", "", key)
    key = re.sub(r"_+", "_", key)
    return key.strip("_")


def match_field_to_glossary(field_name: str, glossary: Mapping[str, GlossaryEntry]) -> Optional[GlossaryEntry]:
    normalized = normalize_field_key(field_name)
    if normalized in glossary:
        return glossary[normalized]
    for entry in glossary.values():
        if any(normalize_field_key(s) == normalized for s in entry.synonyms):
            return entry
    return None


def parse_required_status(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = str(value).strip().lower()
    for vocab, status in _REQUIRED_STATUS_VOCAB:
        if normalized in vocab:
            return status
    return None


def parse_data_type(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    normalized = str(value).strip().lower()
    for vocab, data_type in _DATA_TYPE_VOCAB:
        if normalized in vocab:
            return data_type
    return normalized


def parse_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    else:
        items = [item.strip() for item in _LIST_SPLIT.split(str(value))]
    return tuple(item for item in items if item)


def is_value_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in EMPTY_MARKERS
    return False


def is_na_value(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    return value.strip().lower() in NA_VARIANTS


def glossary_from_records(records: Iterable[Mapping[str, Any]]) -> Glossary:
    """Build a normalized glossary from loosely-typed rows (CSV/JSON).

    Rows without a ``field_key`` are skipped; later rows win on key collisions.
    """

    glossary: Glossary = {}
    for record in records:
        raw_key = str(record.get("field_key") or "").strip()
        if not raw_key:
            continue
        key = normalize_field_key(raw_key)
        if not key:
            continue
        glossary[key] = GlossaryEntry(
            field_key=raw_key,
            label=record.get("label") or None,
            definition=record.get("definition") or None,
            required_status=parse_required_status(record.get("required_status")),
            data_type=parse_data_type(record.get("data_type")),
            allowed_values=parse_list(record.get("allowed_values")),
            input_type=(str(record.get("input_type") or "").strip().lower() or None),
            synonyms=parse_list(record.get("synonyms")),
        )
    return glossary


def is_pdf_match_eligible_field(
    field_name: str,
    field_value: Any,
    entry: Optional[GlossaryEntry],
) -> bool:
    """True when ``field_name`` should be looked for verbatim in the document text.

    Requires a glossary entry marked Required with a textual data type, a
    non-empty value that is not an N/A marker, no enumerated allowed values,
    and a field that is not a city/state/postal component of an address.
    """

    if entry is None:
        return False
    if entry.required_status != REQUIRED:
        return False
    data_type = (entry.data_type or "").lower()
    if data_type not in ELIGIBLE_DATA_TYPES:
        return False
    if is_value_empty(field_value) or is_na_value(field_value):
        return False
    if entry.allowed_values:
        return False
    compact_name = re.sub(r"[\s_-]+", "", (field_name or "").lower())
    if compact_name in SUB_ADDRESS_FIELDS:
        return False
    return True


def get_eligible_fields(
    headers: Sequence[str],
    row: Optional[Mapping[str, Any]],
    glossary: Mapping[str, GlossaryEntry],
) -> List[EligibleField]:
    if not row or not headers or len(headers) <= NON_EDITABLE_COLUMNS:
        return []
    fields: List[EligibleField] = []
    for field_name in headers[NON_EDITABLE_COLUMNS:]:
        value = row.get(field_name)
        entry = match_field_to_glossary(field_name, glossary)
        if is_pdf_match_eligible_field(field_name, value, entry):
            fields.append(EligibleField(field_name, str(value).strip()))
    return fields


def get_fallback_fields(
    headers: Sequence[str],
    row: Optional[Mapping[str, Any]],
) -> List[EligibleField]:
    """Without a glossary: any string value longer than three characters."""

    if not row or not headers or len(headers) <= NON_EDITABLE_COLUMNS:
        return []
    fields: List[EligibleField] = []
    for field_name in headers[NON_EDITABLE_COLUMNS:]:
        value = row.get(field_name)
        if not isinstance(value, str):
            continue
        trimmed = value.strip()
        if len(trimmed) > 3 and not is_value_empty(trimmed):
            fields.append(EligibleField(field_name, trimmed))
    return fields


def select_fields(
    headers: Sequence[str],
    row: Optional[Mapping[str, Any]],
    glossary: Optional[Mapping[str, GlossaryEntry]] = None,
) -> List[EligibleField]:
    if glossary:
        return get_eligible_fields(headers, row, glossary)
    return get_fallback_fields(headers, row)


__all__ = [
    "ELIGIBLE_DATA_TYPES",
    "EligibleField",
    "Glossary",
    "GlossaryEntry",
    "SUB_ADDRESS_FIELDS",
    "get_eligible_fields",
    "get_fallback_fields",
    "glossary_from_records",
    "is_na_value",
    "is_pdf_match_eligible_field",
    "is_value_empty",
    "match_field_to_glossary",
    "normalize_field_key",
    "parse_data_type",
    "parse_required_status",
    "select_fields",
]
