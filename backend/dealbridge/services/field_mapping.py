"""Pipedrive custom field identity mapping.

Pipedrive stores tenant-defined deal fields under opaque 40-character hex
keys. This module turns those keys into named, typed values:

- ``is_custom_field_key`` separates custom keys from standard attributes
- ``FieldRegistry`` resolves a key to its ``FieldDefinition`` (static table
  first, then definitions fetched from Pipedrive)
- ``format_value`` renders a raw value for display according to its type

A registry never changes after construction. Reloading definitions builds a
new registry that callers pass explicitly to the functions below.
"""

import logging
import math
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Union

if TYPE_CHECKING:
    from dealbridge.services.pipedrive import PipedriveClient

logger = logging.getLogger(__name__)

EMPTY_VALUE = "-"

CUSTOM_FIELD_KEY_PATTERN = re.compile(r"[a-f0-9]{32,}")


# =============================================================================
# Field Types and Definitions
# =============================================================================


class FieldType(str, Enum):
    """Display type of a custom field."""

    DATE = "date"
    MONETARY = "monetary"
    NUMERIC = "numeric"
    ENUM = "enum"
    USER = "user"
    TEXT = "text"

    @classmethod
    def from_pipedrive(cls, field_type: Optional[str]) -> "FieldType":
        """Map a Pipedrive ``field_type`` string onto a display type."""
        return PIPEDRIVE_FIELD_TYPES.get((field_type or "").lower(), cls.TEXT)


PIPEDRIVE_FIELD_TYPES: Dict[str, FieldType] = {
    "date": FieldType.DATE,
    "monetary": FieldType.MONETARY,
    "double": FieldType.NUMERIC,
    "int": FieldType.NUMERIC,
    "decimal": FieldType.NUMERIC,
    "enum": FieldType.ENUM,
    "set": FieldType.ENUM,
    "status": FieldType.ENUM,
    "user": FieldType.USER,
}


@dataclass(frozen=True)
class FieldOption:
    """One choice of an enum/set field."""
    id: Any
    label: str


@dataclass(frozen=True)
class FieldDefinition:
    """Name and type of one deal field."""
    key: str
    name: str
    field_type: FieldType
    source_type: str = ""
    options: tuple[FieldOption, ...] = ()
    is_custom: bool = True

    @classmethod
    def from_pipedrive(cls, payload: Mapping[str, Any]) -> "FieldDefinition":
        """Build from one entry of Pipedrive's ``/dealFields`` response."""
        source_type = payload.get("field_type") or ""
        options = tuple(
            FieldOption(id=option.get("id"), label=str(option.get("label", "")))
            for option in payload.get("options") or ()
            if isinstance(option, Mapping)
        )
        key = str(payload["key"])
        return cls(
            key=key,
            name=str(payload.get("name") or key),
            field_type=FieldType.from_pipedrive(source_type),
            source_type=source_type,
            options=options,
            is_custom=is_custom_field_key(key),
        )


def _known(key: str, name: str, source_type: str) -> FieldDefinition:
    return FieldDefinition(
        key=key,
        name=name,
        field_type=FieldType.from_pipedrive(source_type),
        source_type=source_type,
    )


# Custom fields of the connected Pipedrive company, compiled in so that the
# important ones resolve even before definitions have been fetched.
KNOWN_CUSTOM_FIELDS: Mapping[str, FieldDefinition] = MappingProxyType({
    definition.key: definition
    for definition in (
        _known("9af9a192cc0ca1d82ee4793ac3c7109b695936db", "Deal Lead", "user"),
        _known("6938e62f7f64d1a7c6d102f2c4d71e730dacf281", "Budget", "enum"),
        _known("df4ec9de5dc1b54cb8701cf1646eeb6f040b6711", "Lead Status", "enum"),
        _known("9877440a6cc0b573c3000052bae1e677851d3213", "Preferred Method of Communication", "enum"),
        _known("7be48f1ab7dd22aee75e655860c0e9acac6cfaee", "Lead Source", "user"),
        _known("660ac6dabb7ea5e96165fa7f8ef1babd0cd99155", "Conference", "enum"),
        _known("5efaaf201386c51bb440cb624f6d679cace8d8e9", "Service Date Kickoff", "date"),
        _known("de00fe2ddbb8e2c7f61ec75849010af49c827ca7", "Transaction Hash", "varchar"),
        _known("0ead638c506b6c232e407d5c9616cfd96814b97f", "Payment Method", "enum"),
        _known("1145157c2e32c3664dcb49085fcb7c32dbcde920", "Quickbooks Invoice Number", "double"),
        _known("4e969805e9d6c904fecbb19e7795d2a1e60b273f", "Duration (Months)", "double"),
        _known("cf41e8410a92dffd418944de83480b8640162090", "TRN (Transaction Reference Number)", "varchar"),
    )
})


class FieldRegistry(Mapping[str, FieldDefinition]):
    """Immutable lookup of field definitions by key.

    Static definitions win over dynamic ones with the same key.
    """

    def __init__(
        self,
        static: Optional[Mapping[str, FieldDefinition]] = None,
        dynamic: Optional[Mapping[str, FieldDefinition]] = None,
    ):
        self._static = MappingProxyType(dict(KNOWN_CUSTOM_FIELDS if static is None else static))
        self._dynamic = MappingProxyType(dict(dynamic or {}))

    @classmethod
    def from_pipedrive_fields(
        cls,
        fields: Iterable[Mapping[str, Any]],
        static: Optional[Mapping[str, FieldDefinition]] = None,
    ) -> "FieldRegistry":
        """Registry whose dynamic table comes from a ``/dealFields`` payload."""
        dynamic = {}
        for payload in fields:
            if not payload.get("key"):
                continue
            definition = FieldDefinition.from_pipedrive(payload)
            dynamic[definition.key] = definition
        return cls(static=static, dynamic=dynamic)

    def with_dynamic(self, definitions: Iterable[FieldDefinition]) -> "FieldRegistry":
        """New registry with the same static table and a replaced dynamic one."""
        return FieldRegistry(
            static=self._static,
            dynamic={definition.key: definition for definition in definitions},
        )

    @property
    def dynamic_count(self) -> int:
        return len(self._dynamic)

    def resolve(self, key: str) -> Optional[FieldDefinition]:
        """The definition for ``key``, or None when neither table knows it."""
        definition = self._static.get(key)
        if definition is None:
            definition = self._dynamic.get(key)
        return definition

    def name_for(self, key: str) -> str:
        """Display name for ``key``, falling back to the key itself."""
        definition = self.resolve(key)
        return definition.name if definition else key

    def __getitem__(self, key: str) -> FieldDefinition:
        definition = self.resolve(key)
        if definition is None:
            raise KeyError(key)
        return definition

    def __iter__(self) -> Iterator[str]:
        yield from self._static
        for key in self._dynamic:
            if key not in self._static:
                yield key

    def __len__(self) -> int:
        return len(self._static) + sum(1 for key in self._dynamic if key not in self._static)


async def load_field_registry(
    client: "PipedriveClient",
    static: Optional[Mapping[str, FieldDefinition]] = None,
    use_cache: bool = True,
) -> FieldRegistry:
    """Fetch deal field definitions and build a fresh registry from them."""
    fields = await client.get_deal_fields(use_cache=use_cache)
    registry = FieldRegistry.from_pipedrive_fields(fields, static=static)
    logger.info(f"Field registry loaded with {registry.dynamic_count} dynamic definitions")
    return registry


# =============================================================================
# Key Detection and Extraction
# =============================================================================


def is_custom_field_key(key: Any) -> bool:
    """True for Pipedrive's hash-shaped custom field keys (lower-case hex, 32+ chars)."""
    return isinstance(key, str) and CUSTOM_FIELD_KEY_PATTERN.fullmatch(key) is not None


def extract_custom_fields(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Every custom-field ``key: raw value`` pair of a deal record."""
    return {key: value for key, value in record.items() if is_custom_field_key(key)}


# =============================================================================
# Value Formatting
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_finite(value: Any) -> bool:
    if isinstance(value, Decimal):
        return value.is_finite()
    return math.isfinite(value)


def _format_date(value: Any) -> str:
    if isinstance(value, datetime):
        value = value.date()
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value)
        except ValueError:
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00")).date()
            except ValueError:
                return value
    if isinstance(value, date):
        return f"{value.month}/{value.day}/{value.year}"
    return str(value)


def _format_monetary(value: Any) -> str:
    if not _is_number(value):
        return str(value)
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def _format_numeric(value: Any) -> str:
    if not _is_number(value):
        return str(value)
    if isinstance(value, int):
        return f"{value:,}"
    if value == int(value):
        return f"{int(value):,}"
    return f"{value:,.3f}".rstrip("0").rstrip(".")


def _format_user(value: Any) -> str:
    if isinstance(value, Mapping):
        for attribute in ("name", "email", "id"):
            if value.get(attribute):
                return str(value[attribute])
    return str(value)


def _format_enum(value: Any) -> str:
    return str(value)


def _format_text(value: Any) -> str:
    return str(value)


_FORMATTERS: Dict[FieldType, Callable[[Any], str]] = {
    FieldType.DATE: _format_date,
    FieldType.MONETARY: _format_monetary,
    FieldType.NUMERIC: _format_numeric,
    FieldType.ENUM: _format_enum,
    FieldType.USER: _format_user,
    FieldType.TEXT: _format_text,
}

_unformatted = set(FieldType) - set(_FORMATTERS)
if _unformatted:
    raise RuntimeError(f"No formatter registered for field types: {sorted(_unformatted)}")


def _coerce_field_type(field_type: Any) -> FieldType:
    if isinstance(field_type, FieldType):
        return field_type
    try:
        return FieldType(field_type)
    except ValueError:
        return FieldType.TEXT


def format_value(value: Any, field_type: Optional[Union[FieldType, str]] = None) -> str:
    """Render a raw custom field value for display.

    None and the empty string render as ``"-"`` whatever the type; unknown
    types, including type strings outside ``FieldType``, render as plain text.
    """
    if value is None or (isinstance(value, str) and value == ""):
        return EMPTY_VALUE
    if _is_number(value) and not _is_finite(value):
        return str(value)
    return _FORMATTERS[_coerce_field_type(field_type)](value)


# =============================================================================
# Record-level Helpers
# =============================================================================


@dataclass(frozen=True)
class FormattedField:
    """A deal custom field with its resolved name and display value."""
    key: str
    name: str
    value: Any = field(compare=False)
    formatted_value: str
    field_type: Optional[FieldType] = None


def get_formatted_fields(
    record: Mapping[str, Any],
    registry: FieldRegistry,
) -> List[FormattedField]:
    """All custom fields of ``record`` in record order, named and formatted."""
    formatted = []
    for key, value in extract_custom_fields(record).items():
        definition = registry.resolve(key)
        field_type = definition.field_type if definition else None
        formatted.append(
            FormattedField(
                key=key,
                name=definition.name if definition else key,
                value=value,
                formatted_value=format_value(value, field_type),
                field_type=field_type,
            )
        )
    return formatted


def get_non_empty_formatted_fields(
    record: Mapping[str, Any],
    registry: FieldRegistry,
) -> List[FormattedField]:
    """Custom fields whose display value is not the empty marker."""
    return [
        item for item in get_formatted_fields(record, registry)
        if item.formatted_value != EMPTY_VALUE
    ]


def extract_custom_fields_with_names(
    record: Mapping[str, Any],
    registry: FieldRegistry,
) -> Dict[str, Dict[str, Any]]:
    """Custom fields keyed by display name: ``{name: {key, value, type}}``."""
    named = {}
    for key, value in extract_custom_fields(record).items():
        definition = registry.resolve(key)
        named[registry.name_for(key)] = {
            "key": key,
            "value": value,
            "type": definition.field_type.value if definition else None,
        }
    return named
