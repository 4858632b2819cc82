"""Ingestion of inbound referral emails and bulk carer spreadsheets.

Webhook payloads from the supported email providers are normalised into an
InboundEmail. Carer spreadsheets are mapped onto profile fields with fuzzy
header matching so that "Min Age", "min_age" and "Minimum age" all land in
the same place.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from rapidfuzz import fuzz, process
from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..audit import AuditAction, EntityType, create_audit_log
from ..domain import CarerStatus

logger = logging.getLogger(__name__)


class IngestError(Exception):
    """Raised when an inbound payload holds nothing that can be processed."""
    pass


class CarerImportError(Exception):
    """Raised when a carer spreadsheet cannot be mapped at all."""
    pass


@dataclass
class EmailAttachment:
    filename: str
    content: bytes
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class InboundEmail:
    """Provider-independent view of an inbound email."""
    sender: str
    recipient: str
    subject: str
    body: str
    attachments: list[EmailAttachment] = field(default_factory=list)
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def pdf_attachments(self, content_types: list[str]) -> list[EmailAttachment]:
        return [
            a for a in self.attachments
            if a.content_type in content_types or a.filename.lower().endswith(".pdf")
        ]


def parse_sendgrid_payload(payload: Mapping[str, Any]) -> InboundEmail:
    """Parse a SendGrid inbound-parse payload.

    Attachments are expected as a list of ``{filename, content, type}``
    objects with base64 content.

    Raises:
        IngestError: If an attachment cannot be decoded
    """
    attachments = []
    for raw in payload.get("attachments") or []:
        try:
            content = base64.b64decode(raw.get("content", ""), validate=True)
        except (binascii.Error, ValueError) as e:
            raise IngestError(f"Invalid attachment encoding for {raw.get('filename')}: {e}") from e
        attachments.append(EmailAttachment(
            filename=raw.get("filename") or "attachment",
            content=content,
            content_type=raw.get("type") or "application/octet-stream",
        ))

    return InboundEmail(
        sender=payload.get("from", ""),
        recipient=payload.get("to", ""),
        subject=payload.get("subject", ""),
        body=payload.get("text") or payload.get("html") or "",
        attachments=attachments,
    )


def parse_mailgun_payload(
    form: Mapping[str, Any],
    files: list[EmailAttachment] | None = None,
) -> InboundEmail:
    """Parse a Mailgun routed-message form plus its uploaded files."""
    return InboundEmail(
        sender=form.get("sender", ""),
        recipient=form.get("recipient", ""),
        subject=form.get("subject", ""),
        body=form.get("body-plain") or form.get("body-html") or "",
        attachments=list(files or []),
    )


# Spreadsheet header aliases per carer field
CARER_FIELD_ALIASES: dict[str, list[str]] = {
    "name": ["name", "carer name", "full name"],
    "email": ["email", "email address"],
    "phone": ["phone", "telephone", "phone number"],
    "min_age": ["min age", "minimum age", "age from"],
    "max_age": ["max age", "maximum age", "age to"],
    "accepts_siblings": ["accepts siblings", "siblings", "sibling groups"],
    "allows_pets": ["allows pets", "pets", "pets allowed"],
    "experience_with_behavioural_needs": ["behavioural experience", "experience with behavioural needs"],
    "experience_with_sen": ["sen experience", "experience with sen"],
    "preferred_location": ["preferred location", "location", "city"],
    "excluded_locations": ["excluded locations", "exclusions"],
    "gender_preference": ["gender preference", "preferred gender"],
    "capacity": ["capacity", "places", "available places"],
    "status": ["status"],
}

BOOLEAN_FIELDS = {
    "accepts_siblings",
    "allows_pets",
    "experience_with_behavioural_needs",
    "experience_with_sen",
}
INTEGER_FIELDS = {"min_age", "max_age", "capacity"}
LIST_FIELDS = {"excluded_locations"}

TRUE_VALUES = {"yes", "y", "true", "1", "x"}
FALSE_VALUES = {"no", "n", "false", "0", ""}


@dataclass
class CarerImportResult:
    carers: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def _clean_header(header: str) -> str:
    return " ".join(str(header).lower().replace("_", " ").replace("-", " ").split())


def map_headers(headers: list[str], threshold: int = 85) -> dict[str, str]:
    """Map spreadsheet headers to carer fields.

    Args:
        headers: Column headers as they appear in the file
        threshold: Minimum rapidfuzz score for a fuzzy match

    Returns:
        Dict of header -> field name; unmapped headers are left out
    """
    alias_to_field = {
        alias: field_name
        for field_name, aliases in CARER_FIELD_ALIASES.items()
        for alias in aliases
    }
    mapping: dict[str, str] = {}
    taken: set[str] = set()

    for header in headers:
        cleaned = _clean_header(header)
        if cleaned in alias_to_field:
            best = alias_to_field[cleaned]
        else:
            found = process.extractOne(
                cleaned,
                list(alias_to_field),
                scorer=fuzz.token_sort_ratio,
                score_cutoff=threshold,
            )
            if not found:
                logger.debug(f"Ignoring unmapped column: {header!r}")
                continue
            best = alias_to_field[found[0]]

        if best in taken:
            logger.debug(f"Column {header!r} duplicates field {best}, ignoring")
            continue
        mapping[header] = best
        taken.add(best)

    return mapping


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise ValueError(f"not a yes/no value: {value!r}")


def _coerce_int(value: Any) -> int:
    if value is None or str(value).strip() == "":
        raise ValueError("missing number")
    number = float(value)
    if not number.is_integer():
        raise ValueError(f"not a whole number: {value!r}")
    return int(number)


def _coerce_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if str(v).strip()]
    separator = ";" if ";" in str(value) else ","
    return [part.strip() for part in str(value).split(separator) if part.strip()]


def carer_from_record(record: Mapping[str, Any], mapping: Mapping[str, str]) -> dict[str, Any]:
    """Build carer field values from one spreadsheet row.

    Raises:
        ValueError: If the row is missing a name or holds invalid values
    """
    data: dict[str, Any] = {}
    for header, field_name in mapping.items():
        value = record.get(header)
        if field_name in BOOLEAN_FIELDS:
            data[field_name] = _coerce_bool(value)
        elif field_name in INTEGER_FIELDS:
            if value is not None and str(value).strip() != "":
                data[field_name] = _coerce_int(value)
        elif field_name in LIST_FIELDS:
            data[field_name] = _coerce_list(value)
        elif value is not None:
            data[field_name] = str(value).strip()

    if not data.get("name"):
        raise ValueError("missing carer name")

    status = (data.get("status") or CarerStatus.ACTIVE.value).lower()
    if status not in {s.value for s in CarerStatus}:
        raise ValueError(f"unknown status {data['status']!r}")
    data["status"] = status

    if data.get("min_age", 0) > data.get("max_age", 18):
        raise ValueError("min age is greater than max age")
    if data.get("capacity", 0) < 0:
        raise ValueError("capacity cannot be negative")

    return data


def import_carers(records: list[Mapping[str, Any]]) -> CarerImportResult:
    """Convert spreadsheet rows to carer field dicts.

    Invalid rows are skipped and reported in ``errors``.

    Raises:
        CarerImportError: If no column maps to the carer name
    """
    if not records:
        return CarerImportResult()

    mapping = map_headers(list(records[0].keys()))
    if "name" not in mapping.values():
        raise CarerImportError("No column could be mapped to the carer name")

    result = CarerImportResult()
    for row_number, record in enumerate(records, start=2):  # row 1 is the header
        try:
            result.carers.append(carer_from_record(record, mapping))
        except ValueError as e:
            logger.info(f"Skipping carer row {row_number}: {e}")
            result.errors.append(f"Row {row_number}: {e}")

    logger.info(f"Mapped {len(result.carers)} carers, skipped {len(result.errors)} rows")
    return result


async def create_carer(
    session: AsyncSession,
    *,
    data: Mapping[str, Any],
    user_id: str,
    user_name: str,
    notes: str = "New carer profile created",
) -> models.Carer:
    """Create a carer from field values and audit it.

    The caller is responsible for committing.
    """
    carer = models.Carer(**dict(data), created_by=user_id, updated_by=user_id)
    session.add(carer)
    await session.flush()

    create_audit_log(
        session,
        entity_type=EntityType.CARER,
        entity_id=carer.id,
        action=AuditAction.CREATED,
        user_id=user_id,
        user_name=user_name,
        changes={k: v for k, v in data.items() if k not in {"email", "phone"}},
        notes=notes,
    )
    return carer
