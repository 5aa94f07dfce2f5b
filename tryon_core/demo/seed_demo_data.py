# tryon_core/demo/seed_demo_data.py

from tryon_core.storage.models import (
    BillingStatus,
    PlanTier,
    ProductRecord,
    ScenarioRecord,
    StoreFinancials,
)
from tryon_core.storage.repository import (
    initialize_schema,
    insert_products,
    insert_scenarios,
    upsert_store_financials,
)

initialize_schema()

upsert_store_financials(StoreFinancials(
    store_id="demo-store",
    credits_balance=25,
    overdraft_limit=5,
    plan_tier=PlanTier.GROWTH,
    billing_status=BillingStatus.ACTIVE,
))

upsert_store_financials(StoreFinancials(
    store_id="frozen-store",
    credits_balance=10,
    overdraft_limit=0,
    billing_status=BillingStatus.FROZEN,
))

insert_scenarios([
    ScenarioRecord(
        id="beach-sunset",
        image_url="https://cdn.example.com/scenarios/beach-sunset.jpg",
        lighting_prompt="warm golden hour light from the left",
        category="beach",
        tags=("beach", "swim", "summer"),
    ),
    ScenarioRecord(
        id="city-crosswalk",
        image_url="https://cdn.example.com/scenarios/city-crosswalk.jpg",
        lighting_prompt="overcast diffuse daylight",
        category="urban",
        tags=("street", "sneaker", "city"),
    ),
    ScenarioRecord(
        id="gala-hall",
        image_url="https://cdn.example.com/scenarios/gala-hall.jpg",
        lighting_prompt="soft chandelier light, shallow depth of field",
        category="party",
        tags=("gala", "dress", "night"),
    ),
])

insert_products([
    ProductRecord(id="demo-bikini", name="Biquini Praia Tropical", category="Moda Praia"),
    ProductRecord(id="demo-sneaker", name="Tenis Street Runner", category="Calcados"),
    ProductRecord(
        id="demo-gown",
        name="Vestido Longo Gala",
        category="Vestidos",
        description="Vestido de festa em cetim para eventos noturnos",
    ),
])

print("Demo stores, scenarios and products inserted")
