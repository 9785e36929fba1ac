"""
Catalog Module
==============
Customer and product catalog entities plus the read views the order screens
search against.

Catalog records travel as flat dicts keyed by a business code:
- customers: comcode
- products: barcode
- orders: id
"""

import logging
from typing import Dict, List, Any, Optional, Iterable, Mapping
from dataclasses import dataclass, field


logger = logging.getLogger(__name__)


# ============================================================================
# DOMAINS
# ============================================================================

CUSTOMERS = "customers"
PRODUCTS = "products"
ORDERS = "orders"

DOMAIN_KEY_FIELDS = {
    CUSTOMERS: "comcode",
    PRODUCTS: "barcode",
    ORDERS: "id",
}

# Domains bootstrapped cache-first at startup
CATALOG_DOMAINS = (CUSTOMERS, PRODUCTS)

MAX_SEARCH_RESULTS = 50


def key_field(domain: str) -> str:
    """Primary key field for a domain."""
    try:
        return DOMAIN_KEY_FIELDS[domain]
    except KeyError:
        raise ValueError(f"Unknown domain: {domain}") from None


def entity_key(domain: str, entity: Mapping[str, Any]) -> Any:
    """Primary key value of one entity (None if missing)."""
    return entity.get(key_field(domain))


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass(frozen=True)
class Customer:
    """A customer (ordering store)."""
    comcode: str
    name: str
    last_modified: Optional[str] = None

    @property
    def key(self) -> str:
        return self.comcode

    def to_dict(self) -> Dict[str, Any]:
        data = {"comcode": self.comcode, "name": self.name}
        if self.last_modified:
            data["lastModified"] = self.last_modified
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Customer':
        return cls(
            comcode=str(data["comcode"]),
            name=data.get("name") or "",
            last_modified=data.get("lastModified") or data.get("last_modified"),
        )


@dataclass(frozen=True)
class Product:
    """
    A catalog product.

    unit_price is the cost price: the price an order line is created with.
    """
    barcode: str
    name: str
    cost_price: float
    selling_price: float = 0
    spec: str = ""
    supplier_name: str = ""
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> str:
        return self.barcode

    @property
    def unit_price(self) -> float:
        return self.cost_price

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "barcode": self.barcode,
            "name": self.name,
            "costPrice": self.cost_price,
            "sellingPrice": self.selling_price,
            "spec": self.spec,
            "supplierName": self.supplier_name,
        })
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'Product':
        known = {
            "barcode", "name", "costPrice", "cost_price", "price",
            "sellingPrice", "selling_price", "spec", "supplierName", "supplier_name",
        }

        if "costPrice" in data:
            cost_price = data["costPrice"]
        elif "cost_price" in data:
            cost_price = data["cost_price"]
        else:
            cost_price = data.get("price", 0)

        return cls(
            barcode=str(data["barcode"]),
            name=data.get("name") or "",
            cost_price=cost_price or 0,
            selling_price=data.get("sellingPrice", data.get("selling_price")) or 0,
            spec=data.get("spec") or "",
            supplier_name=data.get("supplierName", data.get("supplier_name")) or "",
            extra={k: v for k, v in data.items() if k not in known},
        )


# ============================================================================
# VIEWS
# ============================================================================

class CatalogView:
    """
    Read view over one published catalog domain.

    Replaced wholesale whenever the bootstrap loader publishes a new
    collection; lookups never hit storage.
    """

    def __init__(self, domain: str, entities: Optional[Iterable[Mapping[str, Any]]] = None):
        self.domain = domain
        self._key_field = key_field(domain)
        self._entities: List[Dict[str, Any]] = []
        self._index: Dict[Any, Dict[str, Any]] = {}
        self.replace(entities or [])

    def replace(self, entities: Iterable[Mapping[str, Any]]):
        """Swap in a new collection (entities without a key are skipped)."""
        kept: List[Dict[str, Any]] = []
        index: Dict[Any, Dict[str, Any]] = {}

        for entity in entities:
            key = entity.get(self._key_field)
            if key is None:
                logger.warning(
                    f"Skipped {self.domain} entity without {self._key_field}"
                )
                continue
            record = dict(entity)
            kept.append(record)
            index[key] = record

        self._entities = kept
        self._index = index

    def __len__(self) -> int:
        return len(self._entities)

    def all(self) -> List[Dict[str, Any]]:
        return [dict(entity) for entity in self._entities]

    def get(self, key: Any) -> Optional[Dict[str, Any]]:
        entity = self._index.get(key)
        return dict(entity) if entity is not None else None

    def search(self, query: str, limit: int = MAX_SEARCH_RESULTS) -> List[Dict[str, Any]]:
        """
        Case-insensitive search on name and key.

        Exact key matches come first, then name/key containment in
        collection order.
        """
        if not query or not query.strip():
            return []

        needle = query.strip().lower()
        exact = self._index.get(query.strip())
        results = [dict(exact)] if exact is not None else []

        for entity in self._entities:
            if len(results) >= limit:
                break
            if entity is exact:
                continue

            name = str(entity.get("name") or "").lower()
            key = str(entity.get(self._key_field)).lower()
            if needle in name or needle in key:
                results.append(dict(entity))

        return results[:limit]


class CustomerCatalog(CatalogView):
    def __init__(self, entities: Optional[Iterable[Mapping[str, Any]]] = None):
        super().__init__(CUSTOMERS, entities)

    def customer(self, comcode: str) -> Optional[Customer]:
        entity = self.get(comcode)
        return Customer.from_dict(entity) if entity else None


class ProductCatalog(CatalogView):
    def __init__(self, entities: Optional[Iterable[Mapping[str, Any]]] = None):
        super().__init__(PRODUCTS, entities)

    def product(self, barcode: str) -> Optional[Product]:
        """Typed product lookup (what OrderItemCollection.add_or_merge takes)."""
        entity = self.get(barcode)
        return Product.from_dict(entity) if entity else None
