"""Catalog: subscription plans and purchasable programs.

Plan keys and program slugs are the stable surface; Stripe product and price
IDs come from configuration and may rotate without a schema change. Call
``get_catalog().rebuild()`` after changing configuration.
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from app.billing.exceptions import CommerceError, UnknownPlan, UnknownProgram
from app.billing.stripe_client import retrieve_price
from app.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Plan:
    """A recurring subscription plan."""

    key: str
    name: str
    duration_months: int
    price_cents: int
    currency: str
    stripe_product_id: str | None
    stripe_price_id: str | None
    savings_percent: int = 0
    savings_cents: int = 0
    active: bool = True

    @property
    def display_price(self) -> str:
        return format_price(self.price_cents, self.currency)


@dataclass(frozen=True)
class Program:
    """A one-time purchasable training program."""

    slug: str
    title: str
    author: str
    goals: str
    price_cents: int
    currency: str
    stripe_product_id: str | None
    stripe_price_id: str | None
    description: str = ""
    tags: tuple[str, ...] = ()
    difficulty: str = "beginner"  # beginner, intermediate, advanced
    duration: str = ""
    features: tuple[str, ...] = ()
    image_url: str = ""
    active: bool = True

    @property
    def display_price(self) -> str:
        return format_price(self.price_cents, self.currency)


def format_price(amount_cents: int, currency: str) -> str:
    """Format minor units for display, e.g. ``999, "usd"`` -> ``"$9.99"``."""
    amount = amount_cents / 100
    if currency.lower() in ("usd", "jmd"):
        return f"${amount:,.2f}"
    return f"{amount:,.2f} {currency.upper()}"


# Plan pricing in cents; savings are computed against the monthly plan.
PLAN_DEFINITIONS: list[tuple[str, str, int, int]] = [
    ("1-month", "Monthly", 1, 999),
    ("3-month", "Quarterly", 3, 2799),
    ("6-month", "Semi-Annual", 6, 4999),
    ("12-month", "Annual", 12, 8999),
]

_DEFAULT_PROGRAMS: list[dict] = [
    {
        "slug": "advanced-strength-training",
        "title": "Advanced Strength Training",
        "author": "Jamin Johnson",
        "goals": "Build maximal strength with periodised compound lifting.",
        "description": "Twelve weeks of heavy compound work with planned deloads.",
        "tags": ["strength", "powerlifting"],
        "difficulty": "advanced",
        "duration": "12 weeks",
        "features": ["4 sessions per week", "Progress tracking", "Deload weeks"],
        "price_cents": 4999,
    },
    {
        "slug": "9-week-phased-strength",
        "title": "9-Week Phased Strength Program",
        "author": "Jamin Johnson",
        "goals": "Progress through hypertrophy, strength and peaking phases.",
        "tags": ["strength", "hypertrophy"],
        "difficulty": "intermediate",
        "duration": "9 weeks",
        "features": ["3 phases", "Video demonstrations"],
        "price_cents": 3999,
    },
    {
        "slug": "beginner-full-body",
        "title": "Beginner Full Body",
        "author": "FitPlatform Coaches",
        "goals": "Learn the basic movement patterns and build a training habit.",
        "tags": ["beginner", "full-body"],
        "difficulty": "beginner",
        "duration": "6 weeks",
        "features": ["3 sessions per week", "Technique guides"],
        "price_cents": 1999,
    },
    {
        "slug": "weight-loss-kickstart",
        "title": "Weight Loss Kickstart",
        "author": "FitPlatform Coaches",
        "goals": "Combine conditioning work and nutrition habits for fat loss.",
        "tags": ["weight-loss", "conditioning"],
        "difficulty": "beginner",
        "duration": "8 weeks",
        "features": ["Meal planning templates", "HIIT sessions"],
        "price_cents": 2999,
    },
]


class Catalog:
    """In-memory catalog built from configuration."""

    def __init__(self, config: Settings) -> None:
        self._config = config
        self._plans: dict[str, Plan] = {}
        self._programs: dict[str, Program] = {}
        self._price_cache: dict[str, tuple[float, str]] = {}
        self.rebuild()

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "Catalog":
        return cls(config or settings)

    def rebuild(self) -> None:
        """Re-read plan and program definitions from configuration."""
        self._plans = self._build_plans()
        self._programs = self._build_programs()
        self._price_cache.clear()
        logger.info(
            "Catalog built: %d plans, %d programs",
            len(self._plans),
            len(self._programs),
        )

    def _build_plans(self) -> dict[str, Plan]:
        price_ids = self._config.plan_price_ids()
        product_ids = self._config.plan_product_ids()
        currency = self._config.catalog_currency
        monthly_cents = PLAN_DEFINITIONS[0][3]

        plans: dict[str, Plan] = {}
        for key, name, months, cents in PLAN_DEFINITIONS:
            full_price = monthly_cents * months
            savings = max(full_price - cents, 0)
            plans[key] = Plan(
                key=key,
                name=name,
                duration_months=months,
                price_cents=cents,
                currency=currency,
                stripe_product_id=product_ids.get(key) or None,
                stripe_price_id=price_ids.get(key) or None,
                savings_percent=round(savings * 100 / full_price) if full_price else 0,
                savings_cents=savings,
                # A plan with no recurring price configured cannot be sold.
                active=bool(price_ids.get(key)),
            )
        return plans

    def load_program_definitions(self) -> list[dict]:
        path = self._config.program_catalog_path
        if not path:
            return _DEFAULT_PROGRAMS
        with Path(path).open(encoding="utf-8") as fh:
            data = json.load(fh)
        return data["programs"] if isinstance(data, dict) else data

    def _build_programs(self) -> dict[str, Program]:
        price_ids = self._config.stripe_program_prices
        product_ids = self._config.stripe_program_products
        programs: dict[str, Program] = {}
        for raw in self.load_program_definitions():
            slug = raw["slug"].strip().lower()
            price_id = raw.get("stripe_price_id") or price_ids.get(slug)
            programs[slug] = Program(
                slug=slug,
                title=raw["title"],
                author=raw.get("author", ""),
                goals=raw.get("goals", ""),
                description=raw.get("description", ""),
                tags=tuple(t.lower() for t in raw.get("tags", [])),
                difficulty=raw.get("difficulty", "beginner"),
                duration=raw.get("duration", ""),
                features=tuple(raw.get("features", [])),
                image_url=raw.get("image_url", ""),
                price_cents=int(raw.get("price_cents", 0)),
                currency=raw.get("currency", self._config.catalog_currency),
                stripe_product_id=raw.get("stripe_product_id") or product_ids.get(slug),
                stripe_price_id=price_id,
                active=bool(raw.get("active", True)) and bool(price_id),
            )
        return programs

    # --- Plans ---

    def list_plans(self, include_inactive: bool = False) -> list[Plan]:
        """Plans ordered by duration, shortest first."""
        plans = sorted(self._plans.values(), key=lambda p: p.duration_months)
        if include_inactive:
            return plans
        return [p for p in plans if p.active]

    def resolve_plan(self, key: str) -> Plan:
        plan = self._plans.get(key)
        if plan is None or not plan.active:
            raise UnknownPlan(key)
        return plan

    def plan_for_price_id(self, price_id: str | None) -> Plan | None:
        """Reverse lookup: Stripe price ID -> plan. Returns None if not found."""
        if not price_id:
            return None
        for plan in self._plans.values():
            if plan.stripe_price_id == price_id:
                return plan
        return None

    async def price_of_plan(self, key: str) -> str:
        """Display price for a plan, from Stripe when possible.

        Never raises: on any lookup failure the plan's configured price (or the
        global fallback) is returned so the pricing page still renders.
        """
        plan = self._plans.get(key)
        if plan is None:
            return self._config.catalog_fallback_price
        if not self._config.catalog_live_pricing or not plan.stripe_price_id:
            return plan.display_price

        cached = self._price_cache.get(plan.stripe_price_id)
        if cached and cached[0] > time.monotonic():
            return cached[1]

        try:
            price = await retrieve_price(plan.stripe_price_id)
            display = format_price(price.unit_amount or 0, price.currency or plan.currency)
        except (CommerceError, AttributeError, TypeError) as e:
            logger.warning("Failed to fetch price for plan %s, using fallback: %s", key, e)
            return plan.display_price or self._config.catalog_fallback_price

        ttl = self._config.catalog_price_cache_ttl_seconds
        self._price_cache[plan.stripe_price_id] = (time.monotonic() + ttl, display)
        return display

    # --- Programs ---

    def list_programs(
        self,
        tag: str | None = None,
        difficulty: str | None = None,
        search: str | None = None,
    ) -> list[Program]:
        """Active programs, optionally filtered. Matching is case-insensitive."""
        programs = [p for p in self._programs.values() if p.active]
        if tag:
            needle = tag.lower()
            programs = [p for p in programs if needle in p.tags]
        if difficulty:
            programs = [p for p in programs if p.difficulty == difficulty.lower()]
        if search:
            needle = search.lower()
            programs = [
                p
                for p in programs
                if needle in p.title.lower()
                or needle in p.author.lower()
                or needle in p.description.lower()
                or any(needle in t for t in p.tags)
            ]
        return sorted(programs, key=lambda p: p.title)

    def resolve_program(self, slug: str) -> Program:
        program = self._programs.get(slug.strip().lower())
        if program is None or not program.active:
            raise UnknownProgram(slug)
        return program

    def get_program(self, slug: str) -> Program | None:
        """Look up a program regardless of its active flag (webhooks, owned lists)."""
        return self._programs.get(slug.strip().lower())


_catalog: Catalog | None = None


def get_catalog() -> Catalog:
    """Process-wide catalog, built lazily from ``settings``."""
    global _catalog
    if _catalog is None:
        _catalog = Catalog.from_settings()
    return _catalog
