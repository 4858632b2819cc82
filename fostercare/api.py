"""FastAPI app: carers, referrals, matching, inbound email webhooks and audit.

Caller identity is supplied by the upstream gateway in the X-User-Id,
X-User-Name and X-User-Role headers.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, time, timezone
from io import BytesIO
from typing import Any

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .audit import AuditAction, EntityType, create_audit_log, get_audit_logs
from .config import settings
from .db import get_session
from .domain import CarerStatus, ChildReferral, Gender, PlacementType, Urgency
from .lifecycle import InvalidTransitionError, ReferralStatus, append_status_change, transition
from .logging_config import setup_logging
from .parsers import FileType, ParseError, detect_file_type, parse_csv, parse_excel
from .pipelines.ingest import (
    CarerImportError,
    EmailAttachment,
    IngestError,
    create_carer,
    import_carers,
    parse_mailgun_payload,
    parse_sendgrid_payload,
)
from .pipelines.matching import MatchingError, preview_matches, run_matching
from .pipelines.processing import (
    ReferralProcessingError,
    create_manual_referral,
    process_referral_document,
    process_referral_email,
)
from .rules import criteria_from_settings

logger = logging.getLogger(__name__)

ALLOWED_ROLES = {"admin", "manager", "staff"}


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class Caller(BaseModel):
    """Authenticated caller as supplied by the gateway."""
    user_id: str
    user_name: str
    role: str


class CarerBase(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: str | None = None
    phone: str | None = None
    min_age: int = Field(default=0, ge=0, le=18)
    max_age: int = Field(default=18, ge=0, le=18)
    accepts_siblings: bool = False
    allows_pets: bool = False
    experience_with_behavioural_needs: bool = False
    experience_with_sen: bool = False
    preferred_location: str = ""
    excluded_locations: list[str] = Field(default_factory=list)
    gender_preference: Gender | None = None
    capacity: int = Field(default=0, ge=0)
    status: CarerStatus = CarerStatus.ACTIVE


class CreateCarerRequest(CarerBase):
    """Create carer request."""

    @model_validator(mode="after")
    def check_age_range(self) -> CreateCarerRequest:
        if self.min_age > self.max_age:
            raise ValueError("min_age must not be greater than max_age")
        return self


class UpdateCarerRequest(BaseModel):
    """Partial carer update; only supplied fields change."""
    name: str | None = Field(default=None, min_length=1, max_length=255)
    email: str | None = None
    phone: str | None = None
    min_age: int | None = Field(default=None, ge=0, le=18)
    max_age: int | None = Field(default=None, ge=0, le=18)
    accepts_siblings: bool | None = None
    allows_pets: bool | None = None
    experience_with_behavioural_needs: bool | None = None
    experience_with_sen: bool | None = None
    preferred_location: str | None = None
    excluded_locations: list[str] | None = None
    gender_preference: Gender | None = None
    capacity: int | None = Field(default=None, ge=0)
    status: CarerStatus | None = None


class CarerResponse(CarerBase):
    model_config = ConfigDict(from_attributes=True)

    id: str
    created_at: datetime
    updated_at: datetime


class CarerImportResponse(BaseModel):
    status: str
    imported: int
    carer_ids: list[str]
    errors: list[str]


class ReferralFields(BaseModel):
    """Child referral fields as entered by staff."""
    age: int | None = Field(default=None, ge=0, le=18)
    gender: Gender | None = None
    ethnicity: str = "Unknown"
    cultural_background: str = "Unknown"
    sen_needs: bool = False
    disabilities: list[str] = Field(default_factory=list)
    behavioural_needs: bool = False
    behavioural_details: str = ""
    placement_type: PlacementType = PlacementType.SHORT_TERM
    solo_placement_required: bool = False
    sibling_group: bool = False
    sibling_count: int | None = Field(default=None, ge=1)
    pets_allowed: bool = False
    preferred_locations: list[str] = Field(default_factory=list)
    excluded_locations: list[str] = Field(default_factory=list)
    carer_gender_preference: Gender | None = None
    support_needs: list[str] = Field(default_factory=list)
    medical_needs: list[str] = Field(default_factory=list)
    educational_needs: list[str] = Field(default_factory=list)
    urgency: Urgency = Urgency.MEDIUM
    referral_source: str | None = None


class UpdateReferralRequest(ReferralFields):
    """Partial referral update; only supplied fields change."""
    referral_source: str = Field(default="", max_length=255)


class MatchDetailDTO(BaseModel):
    criterion: str
    points: float
    matched: bool
    details: str


class MatchedCarerDTO(BaseModel):
    carer_id: str
    carer_name: str
    score: float
    max_possible_score: float
    match_details: list[MatchDetailDTO]
    recommended: bool
    contacted: bool = False


class StatusChangeDTO(BaseModel):
    from_status: str
    to_status: str
    timestamp: str
    changed_by: str
    reason: str | None = None
    notes: str | None = None


class ReferralResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    age: int | None
    gender: str | None
    ethnicity: str
    cultural_background: str
    sen_needs: bool
    disabilities: list[str]
    behavioural_needs: bool
    behavioural_details: str
    placement_type: str
    solo_placement_required: bool
    sibling_group: bool
    sibling_count: int | None
    pets_allowed: bool
    preferred_locations: list[str]
    excluded_locations: list[str]
    carer_gender_preference: str | None
    support_needs: list[str]
    medical_needs: list[str]
    educational_needs: list[str]
    referral_source: str
    urgency: str
    status: str
    attachment_name: str | None
    extracted_data: bool
    matched_carers: list[MatchedCarerDTO]
    assigned_carer_id: str | None
    assigned_at: datetime | None
    status_history: list[StatusChangeDTO]
    created_at: datetime
    updated_at: datetime


class ProcessedReferralResponse(BaseModel):
    status: str
    referral_id: str
    referral_status: str
    extracted: bool
    fields_extracted: list[str] = Field(default_factory=list)
    matches: int
    message: str
    error: str | None = None


class StatusUpdateRequest(BaseModel):
    status: ReferralStatus
    reason: str | None = None
    notes: str | None = None


class AssignRequest(BaseModel):
    carer_id: str
    notes: str | None = None


class RematchResponse(BaseModel):
    status: str
    referral_id: str
    matches: int
    recommended: int
    computed_at: str
    message: str


class CriterionOverride(BaseModel):
    weight: float | None = Field(default=None, ge=0.0)
    points: float | None = Field(default=None, ge=0.0)


class MatchPreviewRequest(BaseModel):
    """Interactive matching against the current carer pool."""
    referral: ReferralFields
    criteria: dict[str, CriterionOverride] | None = None
    top_n: int | None = Field(default=None, ge=1, le=500)


class MatchResultDTO(BaseModel):
    carer_id: str
    score: float
    max_possible_score: float
    match_details: list[MatchDetailDTO]
    recommended: bool


class MatchPreviewResponse(BaseModel):
    criteria: dict[str, dict[str, float]]
    matches: list[MatchResultDTO]


class WebhookResponse(BaseModel):
    success: bool
    message: str
    referral_ids: list[str]
    referrals: list[ProcessedReferralResponse]


class AuditLogDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    entity_type: str
    entity_id: str
    action: str
    user_id: str
    user_name: str
    timestamp: datetime
    changes: dict[str, Any]
    notes: str | None


class DashboardStats(BaseModel):
    total_carers: int
    total_referrals: int
    active_referrals: int
    placed_referrals: int


class DailySummary(BaseModel):
    total_today: int
    urgent_today: int
    matched_today: int


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    setup_logging()
    logger.info("Application starting up")

    yield

    logger.info("Application shutting down")


app = FastAPI(
    title="Foster Care Matching API",
    version=settings.version,
    description="Referral intake, PDF extraction and carer matching",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],  # Frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


# Exception handlers
@app.exception_handler(ParseError)
async def parse_error_handler(request, exc: ParseError):
    """Handle document parsing errors."""
    logger.error(f"Parse error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "parse_error", exc)


@app.exception_handler(IngestError)
async def ingest_error_handler(request, exc: IngestError):
    logger.error(f"Ingest error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "ingest_error", exc)


@app.exception_handler(CarerImportError)
async def carer_import_error_handler(request, exc: CarerImportError):
    logger.error(f"Carer import error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "import_error", exc)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request, exc: InvalidTransitionError):
    logger.warning(f"Rejected status change: {exc}")
    return _error(status.HTTP_409_CONFLICT, "invalid_transition", exc)


@app.exception_handler(MatchingError)
async def matching_error_handler(request, exc: MatchingError):
    """Handle matching pipeline errors."""
    logger.error(f"Matching error: {exc}")
    return _error(status.HTTP_409_CONFLICT, "matching_error", exc)


@app.exception_handler(ReferralProcessingError)
async def processing_error_handler(request, exc: ReferralProcessingError):
    """Handle referral processing errors."""
    logger.error(f"Processing error: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "processing_error", exc)


async def get_caller(
    x_user_id: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    x_user_role: str | None = Header(default=None),
) -> Caller:
    """Resolve the calling user from gateway headers."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No caller identity provided",
        )
    role = (x_user_role or "").lower()
    if role not in ALLOWED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role {x_user_role!r} may not use this API",
        )
    return Caller(user_id=x_user_id, user_name=x_user_name or x_user_id, role=role)


async def _get_referral_or_404(session: AsyncSession, referral_id: str) -> models.Referral:
    referral = await session.get(models.Referral, referral_id)
    if referral is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Referral not found")
    return referral


async def _get_carer_or_404(session: AsyncSession, carer_id: str) -> models.Carer:
    carer = await session.get(models.Carer, carer_id)
    if carer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Carer not found")
    return carer


def _apply_changes(entity, updates: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Set ``updates`` on ``entity`` and return ``{field: {"from", "to"}}`` for changed fields."""
    diff = {}
    for key, value in updates.items():
        previous = getattr(entity, key)
        if previous != value:
            diff[key] = {"from": previous, "to": value}
            setattr(entity, key, value)
    return diff


def _processed_response(processed) -> ProcessedReferralResponse:
    if processed.extracted or processed.error is None:
        message = f"Referral created with {processed.matches} potential matches"
    else:
        message = "Document could not be read - referral flagged for manual data entry"
    return ProcessedReferralResponse(
        status="success" if processed.error is None else "needs_review",
        referral_id=processed.referral_id,
        referral_status=processed.status,
        extracted=processed.extracted,
        fields_extracted=processed.fields_extracted,
        matches=processed.matches,
        message=message,
        error=processed.error,
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "carers": "/carers",
            "import_carers": "/carers/import",
            "referrals": "/referrals",
            "upload_referral": "/referrals/upload",
            "rematch": "/referrals/{referral_id}/rematch",
            "preview_matches": "/matching/preview",
            "webhooks": ["/webhooks/sendgrid", "/webhooks/mailgun"],
            "audit": "/audit/{entity_type}/{entity_id}",
            "dashboard": ["/dashboard/stats", "/dashboard/daily-summary"],
            "docs": "/docs",
        },
    }


# Carers

@app.get("/carers", response_model=list[CarerResponse])
async def list_carers(
    carer_status: CarerStatus | None = Query(default=None, alias="status"),
    location: str | None = None,
    limit: int | None = Query(default=None, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> list[models.Carer]:
    query = select(models.Carer).order_by(models.Carer.updated_at.desc())
    if carer_status:
        query = query.where(models.Carer.status == carer_status.value)
    if location:
        query = query.where(models.Carer.preferred_location == location)
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


@app.get("/carers/{carer_id}", response_model=CarerResponse)
async def get_carer(
    carer_id: str,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> models.Carer:
    return await _get_carer_or_404(session, carer_id)


@app.post("/carers", response_model=CarerResponse, status_code=status.HTTP_201_CREATED)
async def create_carer_profile(
    request: CreateCarerRequest,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> models.Carer:
    carer = await create_carer(
        session,
        data=request.model_dump(mode="json"),
        user_id=caller.user_id,
        user_name=caller.user_name,
    )
    await session.commit()
    logger.info(f"Created carer {carer.id}")
    return carer


@app.put("/carers/{carer_id}", response_model=CarerResponse)
async def update_carer_profile(
    carer_id: str,
    request: UpdateCarerRequest,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> models.Carer:
    carer = await _get_carer_or_404(session, carer_id)
    changes = request.model_dump(mode="json", exclude_unset=True)

    min_age = changes.get("min_age", carer.min_age)
    max_age = changes.get("max_age", carer.max_age)
    if min_age > max_age:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="min_age must not be greater than max_age",
        )

    diff = _apply_changes(carer, changes)
    carer.updated_by = caller.user_id

    create_audit_log(
        session,
        entity_type=EntityType.CARER,
        entity_id=carer_id,
        action=AuditAction.UPDATED,
        user_id=caller.user_id,
        user_name=caller.user_name,
        changes=diff,
        notes="Carer profile updated",
    )
    await session.commit()
    await session.refresh(carer)
    return carer


@app.post("/carers/import", response_model=CarerImportResponse, status_code=status.HTTP_201_CREATED)
async def import_carer_sheet(
    file: UploadFile = File(..., description="Carer spreadsheet (CSV or Excel)"),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> CarerImportResponse:
    """Bulk-create carers from a spreadsheet; invalid rows are reported, not fatal."""
    filename = file.filename or ""
    try:
        content = await file.read()
    finally:
        await file.close()

    file_type = detect_file_type(filename, content)
    if file_type == FileType.CSV:
        records = parse_csv(BytesIO(content), filename)
    elif file_type == FileType.EXCEL:
        records = parse_excel(BytesIO(content), filename)
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Unsupported file type. Allowed: .csv, .xls, .xlsx",
        )

    result = import_carers(records)
    carer_ids = []
    for data in result.carers:
        carer = await create_carer(
            session,
            data=data,
            user_id=caller.user_id,
            user_name=caller.user_name,
            notes=f"Imported from {filename}",
        )
        carer_ids.append(carer.id)
    await session.commit()

    return CarerImportResponse(
        status="success",
        imported=len(carer_ids),
        carer_ids=carer_ids,
        errors=result.errors,
    )


# Referrals

@app.get("/referrals", response_model=list[ReferralResponse])
async def list_referrals(
    referral_status: ReferralStatus | None = Query(default=None, alias="status"),
    urgency: Urgency | None = None,
    assigned_carer_id: str | None = None,
    limit: int | None = Query(default=None, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> list[models.Referral]:
    query = select(models.Referral).order_by(models.Referral.created_at.desc())
    if referral_status:
        query = query.where(models.Referral.status == referral_status.value)
    if urgency:
        query = query.where(models.Referral.urgency == urgency.value)
    if assigned_carer_id:
        query = query.where(models.Referral.assigned_carer_id == assigned_carer_id)
    if limit:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


@app.get("/referrals/{referral_id}", response_model=ReferralResponse)
async def get_referral(
    referral_id: str,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> models.Referral:
    return await _get_referral_or_404(session, referral_id)


@app.post("/referrals", response_model=ProcessedReferralResponse, status_code=status.HTTP_201_CREATED)
async def create_referral_manually(
    request: ReferralFields,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> ProcessedReferralResponse:
    """Create a referral from manual data entry and match it immediately."""
    processed = await create_manual_referral(
        session,
        request.model_dump(mode="json"),
        user_id=caller.user_id,
        user_name=caller.user_name,
    )
    return _processed_response(processed)


@app.post("/referrals/upload", response_model=ProcessedReferralResponse, status_code=status.HTTP_201_CREATED)
async def upload_referral(
    file: UploadFile = File(..., description="Referral form (PDF)"),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
):
    """Upload a referral form PDF.

    A document that cannot be read still creates a referral, flagged for
    manual data entry, and the response is 202 instead of 201.
    """
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Filename is required")

    try:
        content = await file.read()
    finally:
        await file.close()

    if detect_file_type(file.filename, content) != FileType.PDF:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Only PDF referral forms are supported")
    if len(content) > settings.ingest.max_attachment_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")

    logger.info(f"Received referral upload: {file.filename}")
    processed = await process_referral_document(
        session,
        EmailAttachment(filename=file.filename, content=content, content_type="application/pdf"),
        referral_source=f"upload:{caller.user_id}",
    )

    response = _processed_response(processed)
    if not processed.extracted:
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=response.model_dump())
    return response


@app.put("/referrals/{referral_id}", response_model=ReferralResponse)
async def update_referral(
    referral_id: str,
    request: UpdateReferralRequest,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> models.Referral:
    """Edit referral fields; only supplied fields change.

    A referral waiting in ``processing`` for manual data entry returns to
    ``pending`` once details are entered, ready for matching.
    """
    referral = await _get_referral_or_404(session, referral_id)
    diff = _apply_changes(referral, request.model_dump(mode="json", exclude_unset=True))

    if diff and referral.status == ReferralStatus.PROCESSING.value:
        change = transition(
            referral.status,
            ReferralStatus.PENDING.value,
            changed_by=caller.user_id,
            reason="Referral details entered manually",
        )
        referral.status = ReferralStatus.PENDING.value
        referral.status_history = append_status_change(referral.status_history, change)

    create_audit_log(
        session,
        entity_type=EntityType.REFERRAL,
        entity_id=referral_id,
        action=AuditAction.UPDATED,
        user_id=caller.user_id,
        user_name=caller.user_name,
        changes=diff,
        notes="Referral details updated",
    )
    await session.commit()
    await session.refresh(referral)
    return referral


@app.get("/referrals/{referral_id}/attachment")
async def download_referral_attachment(
    referral_id: str,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> Response:
    """Return the referral document as received, for manual review."""
    result = await session.execute(
        select(models.Referral.attachment_name, models.Referral.attachment)
        .where(models.Referral.id == referral_id)
    )
    row = result.one_or_none()
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Referral not found")
    if row.attachment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Referral has no attachment")

    return Response(
        content=row.attachment,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{row.attachment_name or "referral.pdf"}"'},
    )


@app.put("/referrals/{referral_id}/status", response_model=ReferralResponse)
async def update_referral_status(
    referral_id: str,
    request: StatusUpdateRequest,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> models.Referral:
    referral = await _get_referral_or_404(session, referral_id)
    previous = referral.status

    change = transition(
        previous,
        request.status.value,
        changed_by=caller.user_id,
        reason=request.reason,
        notes=request.notes,
    )
    referral.status = request.status.value
    referral.status_history = append_status_change(referral.status_history, change)

    create_audit_log(
        session,
        entity_type=EntityType.REFERRAL,
        entity_id=referral_id,
        action=AuditAction.STATUS_CHANGED,
        user_id=caller.user_id,
        user_name=caller.user_name,
        changes={"from": previous, "to": request.status.value},
        notes=request.notes,
    )
    await session.commit()
    await session.refresh(referral)
    return referral


@app.post("/referrals/{referral_id}/assign", response_model=ReferralResponse)
async def assign_referral(
    referral_id: str,
    request: AssignRequest,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> models.Referral:
    """Place a matched referral with a carer."""
    referral = await _get_referral_or_404(session, referral_id)
    await _get_carer_or_404(session, request.carer_id)

    change = transition(
        referral.status,
        ReferralStatus.PLACED.value,
        changed_by=caller.user_id,
        reason="Assigned to carer",
        notes=request.notes,
    )
    referral.assigned_carer_id = request.carer_id
    referral.assigned_at = datetime.now(timezone.utc)
    referral.assigned_by = caller.user_id
    referral.status = ReferralStatus.PLACED.value
    referral.status_history = append_status_change(referral.status_history, change)

    create_audit_log(
        session,
        entity_type=EntityType.REFERRAL,
        entity_id=referral_id,
        action=AuditAction.ASSIGNED,
        user_id=caller.user_id,
        user_name=caller.user_name,
        changes={"assigned_carer_id": request.carer_id},
        notes=request.notes,
    )
    await session.commit()
    await session.refresh(referral)
    return referral


@app.post("/referrals/{referral_id}/rematch", response_model=RematchResponse)
async def rematch_referral(
    referral_id: str,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> RematchResponse:
    """Recompute and replace the referral's match list."""
    await _get_referral_or_404(session, referral_id)

    outcome = await run_matching(
        session,
        referral_id,
        changed_by=caller.user_id,
        user_name=caller.user_name,
        reason="Manual re-matching triggered",
    )
    await session.commit()

    return RematchResponse(
        status="success",
        referral_id=referral_id,
        matches=len(outcome.matches),
        recommended=sum(1 for m in outcome.matches if m["recommended"]),
        computed_at=outcome.computed_at.isoformat(),
        message="Re-matching completed successfully",
    )


# Matching

@app.post("/matching/preview", response_model=MatchPreviewResponse)
async def preview_referral_matches(
    request: MatchPreviewRequest,
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> MatchPreviewResponse:
    """Rank an unsaved referral against the active carer pool."""
    criteria = criteria_from_settings(settings.matching)
    if request.criteria:
        try:
            criteria = criteria.with_overrides({
                name: override.model_dump(exclude_none=True)
                for name, override in request.criteria.items()
            })
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Unknown matching criterion: {e}",
            )

    referral = ChildReferral.from_mapping(request.referral.model_dump(mode="json"))
    results = await preview_matches(session, referral, criteria)
    top_n = request.top_n or len(results)

    return MatchPreviewResponse(
        criteria=criteria.to_dict(),
        matches=[
            MatchResultDTO(
                carer_id=r.carer_id,
                score=r.score,
                max_possible_score=r.max_possible_score,
                match_details=[
                    MatchDetailDTO(
                        criterion=d.criterion,
                        points=d.points,
                        matched=d.matched,
                        details=d.details,
                    )
                    for d in r.match_details
                ],
                recommended=r.recommended,
            )
            for r in results[:top_n]
        ],
    )


# Inbound email webhooks

def _webhook_response(processed: list) -> WebhookResponse:
    return WebhookResponse(
        success=True,
        message="Email processed successfully",
        referral_ids=[p.referral_id for p in processed],
        referrals=[_processed_response(p) for p in processed],
    )


@app.post("/webhooks/sendgrid", response_model=WebhookResponse)
async def sendgrid_webhook(
    payload: dict[str, Any],
    session: AsyncSession = Depends(get_session),
) -> WebhookResponse:
    logger.info("Received SendGrid webhook")
    email = parse_sendgrid_payload(payload)
    processed = await process_referral_email(session, email)
    return _webhook_response(processed)


@app.post("/webhooks/mailgun", response_model=WebhookResponse)
async def mailgun_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> WebhookResponse:
    logger.info("Received Mailgun webhook")
    form = await request.form()

    fields: dict[str, Any] = {}
    files: list[EmailAttachment] = []
    for key, value in form.multi_items():
        if isinstance(value, str):
            fields[key] = value
            continue
        files.append(EmailAttachment(
            filename=value.filename or key,
            content=await value.read(),
            content_type=value.content_type or "application/octet-stream",
        ))

    email = parse_mailgun_payload(fields, files)
    processed = await process_referral_email(session, email)
    return _webhook_response(processed)


# Audit and dashboard

@app.get("/audit/{entity_type}/{entity_id}", response_model=list[AuditLogDTO])
async def list_audit_logs(
    entity_type: EntityType,
    entity_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> list[models.AuditLog]:
    return await get_audit_logs(session, entity_type, entity_id, limit)


async def _count(session: AsyncSession, *conditions) -> int:
    query = select(func.count()).select_from(models.Referral)
    if conditions:
        query = query.where(*conditions)
    return (await session.execute(query)).scalar_one()


@app.get("/dashboard/stats", response_model=DashboardStats)
async def dashboard_stats(
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> DashboardStats:
    active_carers = (await session.execute(
        select(func.count()).select_from(models.Carer).where(
            models.Carer.status == CarerStatus.ACTIVE.value
        )
    )).scalar_one()

    return DashboardStats(
        total_carers=active_carers,
        total_referrals=await _count(session),
        active_referrals=await _count(
            session,
            models.Referral.status.in_([ReferralStatus.PENDING.value, ReferralStatus.MATCHED.value]),
        ),
        placed_referrals=await _count(session, models.Referral.status == ReferralStatus.PLACED.value),
    )


@app.get("/dashboard/daily-summary", response_model=DailySummary)
async def daily_summary(
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_caller),
) -> DailySummary:
    start_of_day = datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)
    created_today = models.Referral.created_at >= start_of_day

    return DailySummary(
        total_today=await _count(session, created_today),
        urgent_today=await _count(
            session,
            created_today,
            models.Referral.urgency.in_([Urgency.HIGH.value, Urgency.EMERGENCY.value]),
        ),
        matched_today=await _count(session, created_today, models.Referral.status == ReferralStatus.MATCHED.value),
    )
