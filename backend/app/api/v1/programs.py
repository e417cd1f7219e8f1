"""Program API endpoints: marketplace listing, purchase and owned content."""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_current_active_user,
    get_db,
    program_ownership_required,
    request_audit_context,
    require_commerce_configured,
)
from app.billing.catalog import Program, get_catalog
from app.billing.checkout import start_program_checkout
from app.models.user import User
from app.schemas.common import Envelope
from app.schemas.program import (
    OwnedProgramResponse,
    OwnedProgramsData,
    ProgramCheckoutData,
    ProgramContentData,
    ProgramResponse,
    ProgramsData,
    PurchaseProgramRequest,
)
from app.services import entitlement_service
from app.services.audit_service import AuditContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/programs", tags=["programs"])


@router.get("", response_model=Envelope[ProgramsData])
async def list_programs(
    tag: str | None = Query(None, max_length=50),
    difficulty: str | None = Query(None, max_length=20),
    search: str | None = Query(None, max_length=100),
) -> Envelope[ProgramsData]:
    """List active programs with optional tag/difficulty/search filters."""
    programs = get_catalog().list_programs(tag=tag, difficulty=difficulty, search=search)
    return Envelope(data=ProgramsData(programs=[ProgramResponse.from_program(p) for p in programs]))


@router.get("/my-programs", response_model=Envelope[OwnedProgramsData])
async def my_programs(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> Envelope[OwnedProgramsData]:
    """Programs the current user owns, oldest purchase first."""
    catalog = get_catalog()
    owned = []
    for row in await entitlement_service.list_owned_programs(db, current_user):
        program = catalog.get_program(row.program_slug)
        if program is None:
            logger.warning("Owned program %s is missing from the catalog", row.program_slug)
            continue
        owned.append(
            OwnedProgramResponse.from_program(
                program,
                acquired_at=row.acquired_at,
                purchase_id=str(row.purchase_id) if row.purchase_id else None,
            )
        )
    return Envelope(data=OwnedProgramsData(programs=owned))


@router.get("/{slug}", response_model=Envelope[ProgramResponse])
async def get_program(slug: str) -> Envelope[ProgramResponse]:
    """Program detail; 404 UNKNOWN_PROGRAM for missing or inactive programs."""
    program = get_catalog().resolve_program(slug)
    return Envelope(data=ProgramResponse.from_program(program))


@router.post(
    "/{slug}/purchase",
    response_model=Envelope[ProgramCheckoutData],
    dependencies=[Depends(require_commerce_configured)],
)
async def purchase_program(
    slug: str,
    body: PurchaseProgramRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    context: AuditContext = Depends(request_audit_context),
) -> Envelope[ProgramCheckoutData]:
    """Start a hosted checkout for a program and return its URL."""
    body = body or PurchaseProgramRequest()
    result = await start_program_checkout(
        db,
        current_user,
        slug,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
        context=context,
    )
    return Envelope(
        data=ProgramCheckoutData(
            checkout_url=result["checkoutUrl"],
            session_id=result["sessionId"],
            purchase_id=result["purchaseId"],
        )
    )


@router.get("/{slug}/content", response_model=Envelope[ProgramContentData])
async def program_content(
    program: Program = Depends(program_ownership_required),
) -> Envelope[ProgramContentData]:
    """Program content for owners (and admins)."""
    return Envelope(
        data=ProgramContentData(
            program=ProgramResponse.from_program(program),
            modules=list(program.features),
        )
    )
