"""
Supplier CSV feed adapter.

Turns a Shopify-style product import CSV into supplier Records.
"""
import csv
import re
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

import structlog

from catalog_reconciliation.models import Record

logger = structlog.get_logger(__name__)

# Accepted header spellings per field, first match wins
COLUMN_ALIASES = {
    "sku": ("Variant SKU", "SKU", "sku"),
    "price": ("Variant Price", "Price", "price"),
    "inventory": ("Variant Inventory Qty", "Inventory", "inventory"),
    "title": ("Title", "Name", "name"),
    "handle": ("Handle", "handle"),
}


def _column(row: Dict[str, str], field: str) -> Optional[str]:
    for header in COLUMN_ALIASES[field]:
        value = row.get(header)
        if value:
            return value.strip()
    return None


def _value(row: Dict[str, str], header: str) -> Optional[str]:
    value = (row.get(header) or "").strip()
    return value or None


def _number(text: Optional[str]) -> Optional[float]:
    if text is None:
        return None
    try:
        return float(text)
    except ValueError:
        return None


def slugify(title: str) -> str:
    """Derive a handle from a product title."""
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


def parse_supplier_rows(rows: Iterable[Dict[str, str]]) -> List[Record]:
    """
    Convert CSV rows into supplier Records.

    Rows missing a handle (and title to derive one from), sku, title or a
    numeric price are skipped.

    Args:
        rows: Dict rows as produced by csv.DictReader

    Returns:
        Supplier records in file order
    """
    records = []
    seen_handles = set()

    for line_no, row in enumerate(rows, start=2):
        sku = _column(row, "sku")
        title = _column(row, "title")
        price = _number(_column(row, "price"))
        handle = _column(row, "handle")
        if not handle and title:
            handle = slugify(title)

        option1_name = _value(row, "Option1 Name")
        option1_value = _value(row, "Option1 Value")
        is_default_variant = option1_name == "Title" and option1_value == "Default Title"

        # Two single-variant products sharing a handle would collapse into one
        if handle and handle in seen_handles and is_default_variant:
            new_handle = f"{handle}-{sku}"
            logger.info("handle_collision", handle=handle, new_handle=new_handle, sku=sku)
            handle = new_handle

        if not (handle and sku and title and price is not None):
            logger.warning(
                "supplier_row_skipped",
                line=line_no,
                handle=handle,
                sku=sku,
                title=title,
                price=price,
            )
            continue

        inventory_text = _column(row, "inventory")
        inventory = int(float(inventory_text)) if _number(inventory_text) is not None else None

        tags = _value(row, "Tags")
        tag_list = [t.strip() for t in tags.split(",")] if tags else []

        records.append(Record(
            handle=handle,
            sku=sku,
            name=title,
            price=price,
            inventory=inventory,
            description_html=_value(row, "Body (HTML)"),
            vendor=_value(row, "Vendor"),
            product_type=tag_list[2] if len(tag_list) >= 3 else None,
            tags=tags,
            compare_at_price=_number(_value(row, "Compare At Price")),
            cost=_number(_value(row, "Cost Per Item")),
            barcode=_value(row, "Variant Barcode"),
            weight_grams=_number(_value(row, "Variant Grams")),
            media_url=_value(row, "Variant Image"),
            category=_value(row, "Category"),
            option1_name=option1_name,
            option1_value=option1_value,
            option2_name=_value(row, "Option2 Name"),
            option2_value=_value(row, "Option2 Value"),
            option3_name=_value(row, "Option3 Name"),
            option3_value=_value(row, "Option3 Value"),
        ))
        seen_handles.add(handle)

    return records


def load_supplier_csv(path: Union[str, Path]) -> List[Record]:
    """Read a supplier CSV file (BOM tolerant) into Records."""
    with open(path, newline="", encoding="utf-8-sig") as f:
        records = parse_supplier_rows(csv.DictReader(f))
    logger.info("supplier_feed_loaded", path=str(path), records=len(records))
    return records
