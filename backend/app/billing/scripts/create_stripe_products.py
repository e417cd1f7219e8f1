"""Create Stripe products and prices for the catalog in test mode.

Run once inside the backend container:
    python -m app.billing.scripts.create_stripe_products

Outputs the IDs to set in .env:
    STRIPE_PRICE_1_MONTH=price_xxx
    ...
    STRIPE_PROGRAM_PRICES={"beginner-full-body": "price_xxx", ...}
"""

import asyncio
import json

import stripe
from stripe import StripeClient

from app.billing.catalog import PLAN_DEFINITIONS, Catalog, format_price
from app.config import settings


async def main() -> None:
    if not settings.stripe_secret_key:
        print("ERROR: STRIPE_SECRET_KEY is not set in .env")
        return
    if settings.billing_environment != "test":
        print("ERROR: refusing to create products with a live key")
        return

    client = StripeClient(
        settings.stripe_secret_key,
        http_client=stripe.HTTPXClient(),
    )
    currency = settings.catalog_currency
    env_lines: list[str] = []

    # --- Subscription plans (recurring, billed every N months) ---
    for key, name, months, cents in PLAN_DEFINITIONS:
        product = await client.v1.products.create_async(
            params={
                "name": f"FitPlatform {name}",
                "description": f"FitPlatform premium access, billed every {months} month(s)",
                "metadata": {"planKey": key},
            }
        )
        price = await client.v1.prices.create_async(
            params={
                "product": product.id,
                "unit_amount": cents,
                "currency": currency,
                "recurring": {"interval": "month", "interval_count": months},
                "metadata": {"planKey": key},
            }
        )
        print(f"Created product: {product.name} ({product.id})")
        print(f"  Price: {format_price(cents, currency)} / {months} mo ({price.id})")
        suffix = key.replace("-", "_").upper()
        env_lines.append(f"STRIPE_PRICE_{suffix}={price.id}")
        env_lines.append(f"STRIPE_PRODUCT_{suffix}={product.id}")

    # --- Programs (one-time) ---
    program_prices: dict[str, str] = {}
    program_products: dict[str, str] = {}
    for raw in Catalog.from_settings().load_program_definitions():
        slug = raw["slug"].strip().lower()
        cents = int(raw.get("price_cents", 0))
        product = await client.v1.products.create_async(
            params={
                "name": raw["title"],
                "description": raw.get("goals") or raw["title"],
                "metadata": {"programSlug": slug},
            }
        )
        price = await client.v1.prices.create_async(
            params={
                "product": product.id,
                "unit_amount": cents,
                "currency": raw.get("currency", currency),
                "metadata": {"programSlug": slug},
            }
        )
        print(f"Created product: {product.name} ({product.id})")
        print(f"  Price: {format_price(cents, currency)} one-time ({price.id})")
        program_prices[slug] = price.id
        program_products[slug] = product.id

    env_lines.append(f"STRIPE_PROGRAM_PRICES={json.dumps(program_prices)}")
    env_lines.append(f"STRIPE_PROGRAM_PRODUCTS={json.dumps(program_products)}")

    print("\n--- Add these to your .env ---")
    for line in env_lines:
        print(line)


if __name__ == "__main__":
    asyncio.run(main())
