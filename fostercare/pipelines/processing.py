"""Referral document processing: PDF → text → extracted fields → referral.

Two failure modes are kept apart. If the PDF cannot be turned into text at
all, the referral is stored as ``processing`` for manual data entry and is
not matched. If text was produced but few fields were found, extraction
still counts as successful and the referral is matched with defaults for
the missing fields.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .. import models
from ..audit import AuditAction, EntityType, create_audit_log
from ..config import settings
from ..domain import ChildReferral, PartialReferral
from ..extractor import extract
from ..lifecycle import ReferralStatus, append_status_change, transition
from ..parsers import ParseError, parse_pdf_bytes
from .ingest import EmailAttachment, InboundEmail, IngestError
from .matching import run_matching

logger = logging.getLogger(__name__)

MATCHING_USER_ID = "matching-system"
MATCHING_USER_NAME = "Matching System"


class ReferralProcessingError(Exception):
    """Raised when a referral cannot be created or stored."""
    pass


@dataclass
class DocumentExtraction:
    """Result of turning a referral document into referral fields.

    ``success`` is False only when the document could not be converted to
    text; an empty ``child_data`` with ``success`` True means no fields
    were recognised.
    """
    success: bool
    child_data: PartialReferral = field(default_factory=dict)
    raw_text: str = ""
    error: str | None = None
    method: str | None = None


@dataclass
class ProcessedReferral:
    """Outcome of processing one referral document."""
    referral_id: str
    status: str
    extracted: bool
    fields_extracted: list[str] = field(default_factory=list)
    matches: int = 0
    error: str | None = None


def extract_referral_from_pdf(
    content: bytes,
    filename: str,
    *,
    today: date | None = None,
) -> DocumentExtraction:
    """Convert a PDF to text and extract referral fields from it."""
    try:
        parsed = parse_pdf_bytes(content, filename)
    except ParseError as e:
        logger.error(f"Could not convert {filename} to text: {e}")
        return DocumentExtraction(success=False, error=str(e))

    child_data = extract(parsed.text, today=today)
    logger.info(
        f"Extracted {len(child_data)} fields from {filename} "
        f"({len(parsed.text)} chars, {parsed.metadata.get('method')})"
    )
    return DocumentExtraction(
        success=True,
        child_data=child_data,
        raw_text=parsed.text,
        method=parsed.metadata.get("method"),
    )


def referral_defaults() -> dict[str, Any]:
    """Neutral values for fields a document did not provide.

    Age has no default: an unknown age stays None.
    """
    defaults = asdict(ChildReferral())
    for key in ("id", "status", "referral_source"):
        defaults.pop(key)
    return defaults


def build_referral_record(
    extraction: DocumentExtraction,
    *,
    referral_source: str,
    received_at: datetime,
) -> dict[str, Any]:
    """Merge extracted fields over defaults into referral column values."""
    record = referral_defaults()
    if extraction.success:
        record.update(extraction.child_data)

    record.update(
        referral_source=referral_source,
        referral_date=received_at,
        extracted_data=extraction.success,
        raw_text=extraction.raw_text or None,
        status=(ReferralStatus.PENDING if extraction.success else ReferralStatus.PROCESSING).value,
    )
    return record


async def create_referral(
    session: AsyncSession,
    record: dict[str, Any],
    *,
    changed_by: str,
    user_name: str,
    reason: str,
    notes: str | None = None,
) -> models.Referral:
    """Insert a referral with its initial status-history entry and audit it."""
    change = transition(None, record["status"], changed_by=changed_by, reason=reason, notes=notes)
    referral = models.Referral(**record, status_history=append_status_change([], change))
    session.add(referral)
    await session.flush()

    create_audit_log(
        session,
        entity_type=EntityType.REFERRAL,
        entity_id=referral.id,
        action=AuditAction.CREATED,
        user_id=changed_by,
        user_name=user_name,
        changes={
            "referral_source": referral.referral_source,
            "extracted_data": referral.extracted_data,
            "status": referral.status,
        },
        notes=notes,
    )
    return referral


async def mark_for_review(
    session: AsyncSession,
    referral_id: str,
    *,
    reason: str,
    notes: str,
    changed_by: str = MATCHING_USER_ID,
) -> None:
    """Move a referral to ``processing`` so staff can review it."""
    referral = await session.get(models.Referral, referral_id)
    if referral is None or referral.status == ReferralStatus.PROCESSING.value:
        return

    change = transition(
        referral.status,
        ReferralStatus.PROCESSING.value,
        changed_by=changed_by,
        reason=reason,
        notes=notes,
    )
    referral.status = ReferralStatus.PROCESSING.value
    referral.status_history = append_status_change(referral.status_history, change)
    await session.commit()


async def match_new_referral(session: AsyncSession, referral_id: str, *, reason: str) -> int:
    """Run matching for a just-created referral.

    On failure the referral is flagged for review and 0 is returned.
    """
    try:
        outcome = await run_matching(
            session,
            referral_id,
            changed_by=MATCHING_USER_ID,
            user_name=MATCHING_USER_NAME,
            reason=reason,
        )
        await session.commit()
    except Exception as e:
        logger.error(f"Matching failed for referral {referral_id}: {e}", exc_info=True)
        await session.rollback()
        await mark_for_review(session, referral_id, reason="Matching failed", notes=f"Matching error: {e}")
        return 0
    return len(outcome.matches)


async def process_referral_document(
    session: AsyncSession,
    attachment: EmailAttachment,
    *,
    referral_source: str,
    received_at: datetime | None = None,
    subject: str = "",
    today: date | None = None,
) -> ProcessedReferral:
    """Create a referral from one PDF and match it when extraction succeeded.

    Raises:
        ReferralProcessingError: If the referral cannot be stored
    """
    logger.info(f"Processing referral document: {attachment.filename}")
    extraction = extract_referral_from_pdf(attachment.content, attachment.filename, today=today)

    record = build_referral_record(
        extraction,
        referral_source=referral_source,
        received_at=received_at or datetime.now(timezone.utc),
    )
    record["attachment_name"] = attachment.filename
    record["attachment"] = attachment.content

    try:
        referral = await create_referral(
            session,
            record,
            changed_by=settings.ingest.system_user_id,
            user_name=settings.ingest.system_user_name,
            reason="Initial referral processing",
            notes=(
                "PDF data extracted successfully"
                if extraction.success
                else f"PDF extraction failed - manual review required: {extraction.error}"
            ),
        )
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Failed to store referral from {attachment.filename}: {e}", exc_info=True)
        raise ReferralProcessingError(f"Failed to store referral: {e}") from e

    referral_id = referral.id
    if not extraction.success:
        return ProcessedReferral(
            referral_id=referral_id,
            status=ReferralStatus.PROCESSING.value,
            extracted=False,
            error=extraction.error,
        )

    matches = await match_new_referral(session, referral_id, reason="Automatic matching completed")
    refreshed = await session.get(models.Referral, referral_id)

    logger.info(f"Created referral {referral_id} from {attachment.filename} ({subject or 'no subject'})")
    return ProcessedReferral(
        referral_id=referral_id,
        status=refreshed.status if refreshed else ReferralStatus.PENDING.value,
        extracted=True,
        fields_extracted=sorted(extraction.child_data),
        matches=matches,
    )


async def process_referral_email(session: AsyncSession, email: InboundEmail) -> list[ProcessedReferral]:
    """Create a referral for each PDF attached to an inbound email.

    Raises:
        IngestError: If the email carries no usable PDF attachment
    """
    logger.info(f"Processing referral email from: {email.sender}")

    candidates = email.pdf_attachments(settings.ingest.pdf_content_types)
    usable = []
    for attachment in candidates:
        if attachment.size > settings.ingest.max_attachment_bytes:
            logger.warning(f"Skipping oversized attachment {attachment.filename} ({attachment.size} bytes)")
            continue
        usable.append(attachment)

    if not usable:
        create_audit_log(
            session,
            entity_type=EntityType.REFERRAL,
            entity_id="unknown",
            action=AuditAction.CREATED,
            user_id=settings.ingest.system_user_id,
            user_name=settings.ingest.system_user_name,
            changes={
                "error": "No PDF attachments found in email",
                "email_from": email.sender,
                "email_subject": email.subject,
            },
            notes="Failed to process referral email",
        )
        await session.commit()
        raise IngestError("No PDF attachments found in email")

    results = []
    for attachment in usable:
        results.append(await process_referral_document(
            session,
            attachment,
            referral_source=email.sender,
            received_at=email.received_at,
            subject=email.subject,
        ))

    logger.info(f"Successfully processed {len(results)} referral(s) from {email.sender}")
    return results


async def create_manual_referral(
    session: AsyncSession,
    data: dict[str, Any],
    *,
    user_id: str,
    user_name: str,
) -> ProcessedReferral:
    """Create a referral from manually entered fields and match it."""
    record = referral_defaults()
    record.update({k: v for k, v in data.items() if k in record})
    record.update(
        referral_source=data.get("referral_source") or f"manual:{user_id}",
        referral_date=datetime.now(timezone.utc),
        extracted_data=False,
        status=ReferralStatus.PENDING.value,
    )

    try:
        referral = await create_referral(
            session,
            record,
            changed_by=user_id,
            user_name=user_name,
            reason="Manual referral entry",
        )
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error(f"Failed to store manual referral: {e}", exc_info=True)
        raise ReferralProcessingError(f"Failed to store referral: {e}") from e

    referral_id = referral.id
    matches = await match_new_referral(session, referral_id, reason="Automatic matching completed")
    refreshed = await session.get(models.Referral, referral_id)
    return ProcessedReferral(
        referral_id=referral_id,
        status=refreshed.status if refreshed else ReferralStatus.PENDING.value,
        extracted=False,
        matches=matches,
    )
