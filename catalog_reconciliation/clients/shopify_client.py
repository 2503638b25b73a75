"""
Shopify Admin GraphQL client.

Wraps the catalog search, bulk operation and mutation calls used by the
reconciliation engine. Throttling is surfaced as ShopifyThrottledError so
callers can apply their own backoff policy; transport errors are retried
here and then raised as ShopifyAPIError.
"""
import json
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx
import structlog
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from catalog_reconciliation.config import Settings
from catalog_reconciliation.models import BulkOperation, BulkStatus, Record

logger = structlog.get_logger(__name__)

THROTTLE_MARKER = "THROTTLED"

GRAMS_PER_UNIT = {
    "GRAMS": 1.0,
    "KILOGRAMS": 1000.0,
    "OUNCES": 28.3495,
    "POUNDS": 453.592,
}

_VARIANT_FIELDS = """
    id
    sku
    price
    compareAtPrice
    barcode
    inventoryQuantity
    selectedOptions { name value }
    image { id url }
    inventoryItem {
      id
      unitCost { amount }
      measurement { weight { unit value } }
"""

_PRODUCT_FIELDS = """
    id
    title
    handle
    descriptionHtml
    vendor
    productType
    tags
    templateSuffix
    featuredImage { id url }
"""

VARIANT_SEARCH_QUERY = """
query variantsBySku($query: String!, $first: Int!) {
  productVariants(first: $first, query: $query) {
    edges {
      node {
        %s
          inventoryLevels(first: 10) { edges { node { location { id } } } }
        }
        product { %s }
      }
    }
  }
}
""" % (_VARIANT_FIELDS, _PRODUCT_FIELDS)

BULK_EXPORT_QUERY = """
{
  products {
    edges {
      node {
        %s
        variants {
          edges {
            node {
              %s
                inventoryLevels { edges { node { id location { id } } } }
              }
            }
          }
        }
      }
    }
  }
}
""" % (_PRODUCT_FIELDS, _VARIANT_FIELDS)

BULK_RUN_MUTATION = """
mutation bulkRun($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
"""

_BULK_OPERATION_FIELDS = "id status errorCode url objectCount"

CURRENT_BULK_OPERATION_QUERY = """
query { currentBulkOperation(type: QUERY) { %s } }
""" % _BULK_OPERATION_FIELDS

BULK_OPERATION_BY_ID_QUERY = """
query bulkOperation($id: ID!) {
  node(id: $id) { ... on BulkOperation { %s } }
}
""" % _BULK_OPERATION_FIELDS

PRODUCT_UPDATE_MUTATION = """
mutation productUpdate($input: ProductInput!) {
  productUpdate(input: $input) {
    product { id }
    userErrors { field message }
  }
}
"""

VARIANT_PRICE_MUTATION = """
mutation variantPrice($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id price }
    userErrors { field message }
  }
}
"""

INVENTORY_SET_MUTATION = """
mutation inventorySet($input: InventorySetOnHandQuantitiesInput!) {
  inventorySetOnHandQuantities(input: $input) {
    inventoryAdjustmentGroup { id }
    userErrors { field message }
  }
}
"""

PRIMARY_LOCATION_QUERY = """
query { locations(first: 1) { edges { node { id } } } }
"""

PRODUCT_BY_HANDLE_QUERY = """
query productByHandle($query: String!) {
  products(first: 1, query: $query) { edges { node { id handle } } }
}
"""

TAGS_ADD_MUTATION = """
mutation tagsAdd($id: ID!, $tags: [String!]!) {
  tagsAdd(id: $id, tags: $tags) {
    node { id }
    userErrors { field message }
  }
}
"""

TAGS_REMOVE_MUTATION = """
mutation tagsRemove($id: ID!, $tags: [String!]!) {
  tagsRemove(id: $id, tags: $tags) {
    node { id }
    userErrors { field message }
  }
}
"""

PRODUCT_SET_MUTATION = """
mutation productSet($input: ProductSetInput!) {
  productSet(input: $input, synchronous: true) {
    product { id handle }
    userErrors { field message }
  }
}
"""

VARIANTS_CREATE_MUTATION = """
mutation variantsCreate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkCreate(productId: $productId, variants: $variants) {
    productVariants { id sku }
    userErrors { field message }
  }
}
"""

PRODUCT_DELETE_MUTATION = """
mutation productDelete($input: ProductDeleteInput!) {
  productDelete(input: $input) {
    deletedProductId
    userErrors { field message }
  }
}
"""

VARIANTS_DELETE_MUTATION = """
mutation variantsDelete($productId: ID!, $variantsIds: [ID!]!) {
  productVariantsBulkDelete(productId: $productId, variantsIds: $variantsIds) {
    product { id }
    userErrors { field message }
  }
}
"""


class ShopifyAPIError(Exception):
    """Non-recoverable Shopify API error."""
    pass


class ShopifyThrottledError(ShopifyAPIError):
    """Request was throttled; safe to retry after a delay."""
    pass


class ShopifyUserError(ShopifyAPIError):
    """Mutation rejected with userErrors."""
    pass


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _weight_in_grams(inventory_item: Dict) -> Optional[float]:
    weight = ((inventory_item.get("measurement") or {}).get("weight")) or {}
    value = _to_float(weight.get("value"))
    if value is None:
        return None
    return value * GRAMS_PER_UNIT.get(weight.get("unit") or "GRAMS", 1.0)


def _edge_nodes(connection: Optional[Dict]) -> List[Dict]:
    return [edge["node"] for edge in (connection or {}).get("edges", []) if edge.get("node")]


def variant_to_record(
    product: Dict,
    variant: Dict,
    location_ids: Iterable[str] = (),
) -> Record:
    """
    Flatten a product/variant pair from the Admin API into a Record.

    Args:
        product: Product node (parent-level fields)
        variant: ProductVariant node
        location_ids: Locations the variant is stocked at

    Returns:
        Record with remote identity populated
    """
    inventory_item = variant.get("inventoryItem") or {}
    options = variant.get("selectedOptions") or []
    option_pairs = [(o.get("name"), o.get("value")) for o in options[:3]]
    option_pairs += [(None, None)] * (3 - len(option_pairs))

    tags = product.get("tags")
    if isinstance(tags, list):
        tags = ", ".join(tags)

    image = variant.get("image") or product.get("featuredImage") or {}

    return Record(
        remote_id=product.get("id"),
        variant_id=variant.get("id"),
        inventory_item_id=inventory_item.get("id"),
        handle=product.get("handle") or "",
        sku=variant.get("sku") or "",
        name=product.get("title") or "",
        price=_to_float(variant.get("price")) or 0.0,
        inventory=variant.get("inventoryQuantity"),
        description_html=product.get("descriptionHtml"),
        vendor=product.get("vendor"),
        product_type=product.get("productType"),
        tags=tags or None,
        compare_at_price=_to_float(variant.get("compareAtPrice")),
        cost=_to_float((inventory_item.get("unitCost") or {}).get("amount")),
        barcode=variant.get("barcode"),
        weight_grams=_weight_in_grams(inventory_item),
        media_url=image.get("url"),
        image_id=image.get("id"),
        option1_name=option_pairs[0][0],
        option1_value=option_pairs[0][1],
        option2_name=option_pairs[1][0],
        option2_value=option_pairs[1][1],
        option3_name=option_pairs[2][0],
        option3_value=option_pairs[2][1],
        template_suffix=product.get("templateSuffix"),
        location_ids=tuple(location_ids),
    )


def _parse_bulk_operation(node: Optional[Dict]) -> Optional[BulkOperation]:
    if not node or not node.get("id"):
        return None
    return BulkOperation(
        id=node["id"],
        status=BulkStatus(node.get("status") or "NONE"),
        url=node.get("url"),
        error_code=node.get("errorCode"),
        object_count=int(node["objectCount"]) if node.get("objectCount") else None,
    )


class ShopifyClient:
    """Async client for the Shopify Admin GraphQL API."""

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Shopify client.

        Args:
            settings: Application settings with shop credentials
            transport: Optional httpx transport (used by tests)
        """
        self.endpoint = settings.graphql_url
        self.access_token = settings.access_token
        self.timeout = settings.request_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._location_id: Optional[str] = settings.inventory_location_id

    async def connect(self) -> None:
        """Open the HTTP connection pool."""
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "X-Shopify-Access-Token": self.access_token,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        logger.info("shopify_client_connected", endpoint=self.endpoint)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("shopify_client_closed")

    @property
    def http(self) -> httpx.AsyncClient:
        if not self._client:
            raise RuntimeError("ShopifyClient not connected")
        return self._client

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, payload: Dict) -> httpx.Response:
        return await self.http.post(self.endpoint, json=payload)

    async def execute(self, query: str, variables: Optional[Dict] = None) -> Dict:
        """
        Execute a GraphQL document.

        Args:
            query: GraphQL query or mutation
            variables: Variables for the document

        Returns:
            The `data` object of the response

        Raises:
            ShopifyThrottledError: Request was throttled (retryable)
            ShopifyAPIError: Any other failure, transport errors included
        """
        try:
            response = await self._post({"query": query, "variables": variables or {}})
        except httpx.TransportError as e:
            raise ShopifyAPIError(f"Transport error: {e}") from e

        if response.status_code == 429:
            raise ShopifyThrottledError("HTTP 429: throttled")
        if response.status_code >= 400:
            raise ShopifyAPIError(f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except json.JSONDecodeError:
            raise ShopifyAPIError(f"Invalid JSON: {response.text[:200]}")

        errors = body.get("errors")
        if errors:
            serialized = json.dumps(errors)
            if THROTTLE_MARKER in serialized.upper():
                raise ShopifyThrottledError(f"Throttled: {serialized[:200]}")
            raise ShopifyAPIError(f"GraphQL error: {serialized[:500]}")

        return body.get("data") or {}

    def _payload(self, data: Dict, root: str) -> Dict:
        """Return a mutation payload, raising on userErrors."""
        payload = data.get(root) or {}
        user_errors = payload.get("userErrors") or []
        if user_errors:
            message = user_errors[0].get("message", "Unknown error")
            raise ShopifyUserError(f"{root} failed: {message}")
        return payload

    # =========================================================================
    # Catalog search
    # =========================================================================

    async def search_variants(self, query: str, first: int = 250) -> List[Record]:
        """
        Run a variant search and flatten the hits into Records.

        Args:
            query: Shopify search syntax, e.g. `sku:"A" OR sku:"B"`
            first: Page size

        Returns:
            Records for every variant with a sku
        """
        data = await self.execute(VARIANT_SEARCH_QUERY, {"query": query, "first": first})

        records = []
        for node in _edge_nodes(data.get("productVariants")):
            if not node.get("sku"):
                continue
            levels = _edge_nodes((node.get("inventoryItem") or {}).get("inventoryLevels"))
            location_ids = [lvl["location"]["id"] for lvl in levels if lvl.get("location")]
            records.append(variant_to_record(node.get("product") or {}, node, location_ids))
        return records

    async def product_id_by_handle(self, handle: str) -> Optional[str]:
        """Look up a product GID by handle."""
        data = await self.execute(PRODUCT_BY_HANDLE_QUERY, {"query": f"handle:{json.dumps(handle)}"})
        nodes = _edge_nodes(data.get("products"))
        for node in nodes:
            if node.get("handle") == handle:
                return node["id"]
        return None

    # =========================================================================
    # Bulk operations
    # =========================================================================

    async def run_bulk_query(self) -> BulkOperation:
        """Start a bulk export of the full catalog."""
        data = await self.execute(BULK_RUN_MUTATION, {"query": BULK_EXPORT_QUERY})
        payload = self._payload(data, "bulkOperationRunQuery")
        operation = _parse_bulk_operation(payload.get("bulkOperation"))
        if operation is None:
            raise ShopifyAPIError("bulkOperationRunQuery returned no operation")
        return operation

    async def current_bulk_operation(self) -> Optional[BulkOperation]:
        """The shop's current query bulk operation, if any."""
        data = await self.execute(CURRENT_BULK_OPERATION_QUERY)
        return _parse_bulk_operation(data.get("currentBulkOperation"))

    async def bulk_operation(self, operation_id: str) -> Optional[BulkOperation]:
        """Targeted lookup of a bulk operation by id."""
        data = await self.execute(BULK_OPERATION_BY_ID_QUERY, {"id": operation_id})
        return _parse_bulk_operation(data.get("node"))

    async def download(self, url: str) -> str:
        """
        Download a bulk operation result file.

        The URL is pre-signed storage, so the request goes out without the
        shop access token.
        """
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as storage:
            response = await storage.get(url)
        response.raise_for_status()
        return response.text

    # =========================================================================
    # Mutations
    # =========================================================================

    async def update_product(
        self,
        remote_id: str,
        title: Optional[str] = None,
        description_html: Optional[str] = None,
        template_suffix: Optional[str] = None,
    ) -> Dict:
        """Update product-level fields."""
        product_input: Dict[str, Any] = {"id": remote_id}
        if title is not None:
            product_input["title"] = title
        if description_html is not None:
            product_input["descriptionHtml"] = description_html
        if template_suffix is not None:
            product_input["templateSuffix"] = template_suffix

        data = await self.execute(PRODUCT_UPDATE_MUTATION, {"input": product_input})
        return self._payload(data, "productUpdate")

    async def update_variant_price(self, remote_id: str, variant_id: str, price: float) -> Dict:
        data = await self.execute(
            VARIANT_PRICE_MUTATION,
            {"productId": remote_id, "variants": [{"id": variant_id, "price": str(price)}]},
        )
        return self._payload(data, "productVariantsBulkUpdate")

    async def primary_location_id(self) -> str:
        """Location used for inventory corrections (first store location)."""
        if self._location_id:
            return self._location_id
        data = await self.execute(PRIMARY_LOCATION_QUERY)
        nodes = _edge_nodes(data.get("locations"))
        if not nodes:
            raise ShopifyAPIError("Could not find a location to update inventory for")
        self._location_id = nodes[0]["id"]
        return self._location_id

    async def set_inventory(self, inventory_item_id: str, location_id: str, quantity: int) -> Dict:
        data = await self.execute(
            INVENTORY_SET_MUTATION,
            {
                "input": {
                    "reason": "correction",
                    "setQuantities": [
                        {
                            "inventoryItemId": inventory_item_id,
                            "locationId": location_id,
                            "quantity": quantity,
                        }
                    ],
                }
            },
        )
        return self._payload(data, "inventorySetOnHandQuantities")

    async def add_tags(self, remote_id: str, tags: Sequence[str]) -> Dict:
        data = await self.execute(TAGS_ADD_MUTATION, {"id": remote_id, "tags": list(tags)})
        return self._payload(data, "tagsAdd")

    async def remove_tags(self, remote_id: str, tags: Sequence[str]) -> Dict:
        data = await self.execute(TAGS_REMOVE_MUTATION, {"id": remote_id, "tags": list(tags)})
        return self._payload(data, "tagsRemove")

    async def create_product(self, records: Sequence[Record], extra_tags: Sequence[str] = ()) -> Dict:
        """
        Create a product with one variant per supplier record.

        Args:
            records: Supplier records sharing one handle
            extra_tags: Tags added on top of the supplier tags

        Returns:
            productSet payload with the new product id
        """
        first = records[0]
        tags = [t.strip() for t in (first.tags or "").split(",") if t.strip()]
        tags.extend(t for t in extra_tags if t not in tags)

        data = await self.execute(
            PRODUCT_SET_MUTATION,
            {"input": _product_set_input(first, records, tags)},
        )
        return self._payload(data, "productSet")

    async def create_variants(self, remote_id: str, records: Sequence[Record]) -> Dict:
        """Add variants to an existing product."""
        data = await self.execute(
            VARIANTS_CREATE_MUTATION,
            {"productId": remote_id, "variants": [_variant_input(r) for r in records]},
        )
        return self._payload(data, "productVariantsBulkCreate")

    async def delete_product(self, remote_id: str) -> Dict:
        data = await self.execute(PRODUCT_DELETE_MUTATION, {"input": {"id": remote_id}})
        return self._payload(data, "productDelete")

    async def delete_variant(self, remote_id: str, variant_id: str) -> Dict:
        data = await self.execute(
            VARIANTS_DELETE_MUTATION,
            {"productId": remote_id, "variantsIds": [variant_id]},
        )
        return self._payload(data, "productVariantsBulkDelete")


def _option_values(record: Record) -> List[Dict[str, str]]:
    pairs = [
        (record.option1_name, record.option1_value),
        (record.option2_name, record.option2_value),
        (record.option3_name, record.option3_value),
    ]
    return [{"optionName": n, "name": v} for n, v in pairs if n and v]


def _variant_input(record: Record) -> Dict[str, Any]:
    variant: Dict[str, Any] = {
        "price": str(record.price),
        "inventoryItem": {"sku": record.sku},
        "optionValues": _option_values(record)
        or [{"optionName": "Title", "name": "Default Title"}],
    }
    if record.compare_at_price is not None:
        variant["compareAtPrice"] = str(record.compare_at_price)
    if record.barcode:
        variant["barcode"] = record.barcode
    if record.cost is not None:
        variant["inventoryItem"]["cost"] = str(record.cost)
    if record.weight_grams is not None:
        variant["inventoryItem"]["measurement"] = {
            "weight": {"unit": "GRAMS", "value": record.weight_grams}
        }
    return variant


def _product_set_input(first: Record, records: Sequence[Record], tags: List[str]) -> Dict[str, Any]:
    option_names: Dict[str, List[str]] = {}
    for record in records:
        for pair in _option_values(record):
            values = option_names.setdefault(pair["optionName"], [])
            if pair["name"] not in values:
                values.append(pair["name"])
    if not option_names:
        option_names = {"Title": ["Default Title"]}

    product_input: Dict[str, Any] = {
        "title": first.name,
        "handle": first.handle,
        "productOptions": [
            {"name": name, "values": [{"name": v} for v in values]}
            for name, values in option_names.items()
        ],
        "variants": [_variant_input(r) for r in records],
        "tags": tags,
    }
    if first.description_html:
        product_input["descriptionHtml"] = first.description_html
    if first.vendor:
        product_input["vendor"] = first.vendor
    if first.product_type:
        product_input["productType"] = first.product_type
    if first.template_suffix:
        product_input["templateSuffix"] = first.template_suffix
    return product_input
