"""Pydantic v2 request/response schemas for program endpoints."""

from datetime import datetime

from app.billing.catalog import Program
from app.schemas.common import CamelModel


class PurchaseProgramRequest(CamelModel):
    """Optional overrides for the hosted checkout redirect URLs."""

    success_url: str | None = None
    cancel_url: str | None = None


class ProgramResponse(CamelModel):
    slug: str
    title: str
    author: str
    goals: str
    description: str
    tags: list[str]
    difficulty: str
    duration: str
    features: list[str]
    image_url: str
    price_cents: int
    currency: str
    display_price: str
    product_id: str | None
    price_id: str | None

    @classmethod
    def from_program(cls, program: Program, **extra) -> "ProgramResponse":
        return cls(
            slug=program.slug,
            title=program.title,
            author=program.author,
            goals=program.goals,
            description=program.description,
            tags=list(program.tags),
            difficulty=program.difficulty,
            duration=program.duration,
            features=list(program.features),
            image_url=program.image_url,
            price_cents=program.price_cents,
            currency=program.currency,
            display_price=program.display_price,
            product_id=program.stripe_product_id,
            price_id=program.stripe_price_id,
            **extra,
        )


class OwnedProgramResponse(ProgramResponse):
    acquired_at: datetime
    purchase_id: str | None = None


class ProgramsData(CamelModel):
    programs: list[ProgramResponse]


class OwnedProgramsData(CamelModel):
    programs: list[OwnedProgramResponse]


class ProgramCheckoutData(CamelModel):
    checkout_url: str
    session_id: str
    purchase_id: str


class ProgramContentData(CamelModel):
    program: ProgramResponse
    modules: list[str]
