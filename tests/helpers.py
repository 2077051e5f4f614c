"""Canned retailer payloads and small database helpers for tests."""

import json
from typing import Optional

from grocart.db.models import Store


def target_product(tcin: str, title: str, price: float, barcode: Optional[str] = None,
                   brand: Optional[str] = None) -> dict:
    item: dict = {"product_description": {"title": title}}
    if barcode:
        item["primary_barcode"] = barcode
    if brand:
        item["product_brand"] = {"name": brand}
    return {"tcin": tcin, "item": item, "price": {"current_retail": price}}


def target_search_body(*products: dict) -> dict:
    return {"data": {"search": {"products": list(products)}}}


def target_stores_body(*stores: dict) -> dict:
    return {"data": {"nearby_stores": {"stores": list(stores)}}}


def target_store(store_id: str, zip_code: str, distance: float, lat: float, lon: float) -> dict:
    return {
        "store_id": store_id,
        "location_name": f"Target {store_id}",
        "distance": distance,
        "mailing_address": {
            "address_line1": f"{store_id} Main St",
            "city": "Woodbridge",
            "region": "NJ",
            "postal_code": f"{zip_code}-1234",
        },
        "geographic_specifications": {"latitude": lat, "longitude": lon},
    }


def shoprite_page(products: list) -> str:
    state = {"search": {"searchProductItems": products}}
    return (
        "<html><head><title>ShopRite</title></head><body><div id='root'></div>"
        f"<script>window.__PRELOADED_STATE__ = {json.dumps(state)};</script>"
        "</body></html>"
    )


async def add_store(session_factory, chain: str, external_id: str, zip_code: str,
                    lat: Optional[float] = None, lon: Optional[float] = None) -> Store:
    async with session_factory() as db:
        store = Store(
            chain_name=chain,
            external_store_id=external_id,
            store_name=f"{chain} {external_id}",
            zip_code=zip_code,
            latitude=lat,
            longitude=lon,
        )
        db.add(store)
        await db.commit()
        return store


TARGET_SEARCH_PATH = "plp_search_v2"
TARGET_LOCATOR_PATH = "nearby_stores"
SHOPRITE_SEARCH_PATH = "/results"
