"""Tests for the plan/program catalog and display pricing."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from app.billing.catalog import Catalog, format_price, get_catalog
from app.billing.exceptions import ProviderUnavailable, UnknownPlan, UnknownProgram
from app.config import settings


def _catalog(**overrides) -> Catalog:
    return Catalog(settings.model_copy(update=overrides))


class TestFormatPrice:
    def test_dollar_currencies(self):
        assert format_price(999, "usd") == "$9.99"
        assert format_price(1234567, "jmd") == "$12,345.67"

    def test_other_currency_uses_code(self):
        assert format_price(2500, "eur") == "25.00 EUR"


class TestPlans:
    def test_four_plans_ordered_by_duration(self):
        plans = get_catalog().list_plans()
        assert [p.key for p in plans] == ["1-month", "3-month", "6-month", "12-month"]

    def test_price_ids_come_from_settings(self):
        plan = get_catalog().resolve_plan("3-month")
        assert plan.stripe_price_id == "price_test_3m"
        assert plan.duration_months == 3

    def test_savings_against_monthly(self):
        annual = get_catalog().resolve_plan("12-month")
        monthly = get_catalog().resolve_plan("1-month")
        assert monthly.savings_percent == 0
        assert annual.savings_cents == monthly.price_cents * 12 - annual.price_cents
        assert annual.savings_percent > 0

    def test_unknown_plan(self):
        with pytest.raises(UnknownPlan) as exc_info:
            get_catalog().resolve_plan("2-month")
        assert exc_info.value.code == "UNKNOWN_PLAN"
        assert exc_info.value.status_code == 404

    def test_plan_without_price_is_not_sellable(self):
        catalog = _catalog(stripe_price_6_month="")
        assert "6-month" not in [p.key for p in catalog.list_plans()]
        assert "6-month" in [p.key for p in catalog.list_plans(include_inactive=True)]
        with pytest.raises(UnknownPlan):
            catalog.resolve_plan("6-month")

    def test_plan_for_price_id(self):
        catalog = get_catalog()
        assert catalog.plan_for_price_id("price_test_12m").key == "12-month"
        assert catalog.plan_for_price_id("price_unknown") is None
        assert catalog.plan_for_price_id(None) is None

    def test_rebuild_picks_up_rotated_price(self):
        config = settings.model_copy()
        catalog = Catalog(config)
        config.stripe_price_1_month = "price_rotated"
        assert catalog.resolve_plan("1-month").stripe_price_id == "price_test_1m"
        catalog.rebuild()
        assert catalog.resolve_plan("1-month").stripe_price_id == "price_rotated"


class TestPriceOfPlan:
    @pytest.mark.asyncio
    async def test_configured_price_when_live_pricing_off(self):
        catalog = _catalog(catalog_live_pricing=False)
        assert await catalog.price_of_plan("1-month") == "$9.99"

    @pytest.mark.asyncio
    async def test_unknown_plan_returns_fallback(self):
        assert await get_catalog().price_of_plan("nope") == settings.catalog_fallback_price

    @pytest.mark.asyncio
    async def test_live_price_is_fetched_and_cached(self):
        catalog = _catalog(catalog_live_pricing=True)
        price = SimpleNamespace(unit_amount=1099, currency="jmd")
        with patch("app.billing.catalog.retrieve_price", new=AsyncMock(return_value=price)) as mock:
            assert await catalog.price_of_plan("1-month") == "$10.99"
            assert await catalog.price_of_plan("1-month") == "$10.99"
        mock.assert_awaited_once_with("price_test_1m")

    @pytest.mark.asyncio
    async def test_provider_failure_never_raises(self):
        catalog = _catalog(catalog_live_pricing=True)
        with patch(
            "app.billing.catalog.retrieve_price",
            new=AsyncMock(side_effect=ProviderUnavailable()),
        ):
            assert await catalog.price_of_plan("3-month") == "$27.99"


class TestPrograms:
    def test_default_programs_are_active(self):
        slugs = {p.slug for p in get_catalog().list_programs()}
        assert "advanced-strength-training" in slugs
        assert "beginner-full-body" in slugs

    def test_filter_by_difficulty_and_tag(self):
        catalog = get_catalog()
        advanced = catalog.list_programs(difficulty="ADVANCED")
        assert [p.slug for p in advanced] == ["advanced-strength-training"]
        strength = {p.slug for p in catalog.list_programs(tag="strength")}
        assert strength == {"advanced-strength-training", "9-week-phased-strength"}

    def test_search_matches_title_and_author(self):
        catalog = get_catalog()
        assert {p.slug for p in catalog.list_programs(search="kickstart")} == {"weight-loss-kickstart"}
        assert len(catalog.list_programs(search="jamin")) == 2

    def test_resolve_normalises_slug(self):
        program = get_catalog().resolve_program("  Beginner-Full-Body ")
        assert program.slug == "beginner-full-body"
        assert program.stripe_price_id == "price_test_bfb"

    def test_unknown_program(self):
        with pytest.raises(UnknownProgram) as exc_info:
            get_catalog().resolve_program("does-not-exist")
        assert exc_info.value.details == {"slug": "does-not-exist"}

    def test_program_without_price_is_inactive_but_still_resolvable_for_owners(self):
        prices = dict(settings.stripe_program_prices)
        prices.pop("weight-loss-kickstart")
        catalog = _catalog(stripe_program_prices=prices)
        with pytest.raises(UnknownProgram):
            catalog.resolve_program("weight-loss-kickstart")
        assert catalog.get_program("weight-loss-kickstart") is not None

    def test_programs_loaded_from_file(self, tmp_path):
        path = tmp_path / "programs.json"
        path.write_text(
            json.dumps(
                {
                    "programs": [
                        {
                            "slug": "mobility-basics",
                            "title": "Mobility Basics",
                            "price_cents": 1500,
                            "stripe_price_id": "price_file_mob",
                            "tags": ["Mobility"],
                        }
                    ]
                }
            ),
            encoding="utf-8",
        )
        catalog = _catalog(program_catalog_path=str(path))
        program = catalog.resolve_program("mobility-basics")
        assert program.tags == ("mobility",)
        assert program.display_price == "$15.00"
        assert catalog.get_program("beginner-full-body") is None
