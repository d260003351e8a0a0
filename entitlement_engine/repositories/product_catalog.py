"""Pro product catalog - which products unlock the Pro entitlement.

Loads from config/entitlements.yaml. An empty catalog places no restriction:
every product's receipts count towards Pro.
"""

from typing import Dict, Iterable, List, Optional

from entitlement_engine.config import Config
from entitlement_engine.errors import ProductNotFoundError
from entitlement_engine.models.receipt import Receipt
from entitlement_engine.models.settings import ProProductDefinition


class ProductCatalog:
    """Catalog of Pro product definitions with fast lookup."""

    def __init__(self, products: Optional[Iterable[ProProductDefinition]] = None):
        self._products_by_id: Dict[str, ProProductDefinition] = {}
        for product in products or ():
            self._products_by_id[product.id] = product

    @classmethod
    def from_config(cls, config: Config) -> "ProductCatalog":
        """Build the catalog from the pro_products configuration section."""
        return cls(config.settings.pro_products)

    def get_by_id(self, product_id: str) -> ProProductDefinition:
        """Get product definition by ID.

        Raises:
            ProductNotFoundError: If product ID not found
        """
        product = self._products_by_id.get(product_id)
        if product is None:
            raise ProductNotFoundError(
                f"Product not found: {product_id}. "
                f"Available products: {list(self._products_by_id.keys())}"
            )
        return product

    def find_by_id(self, product_id: str) -> Optional[ProProductDefinition]:
        return self._products_by_id.get(product_id)

    def get_all_product_ids(self) -> List[str]:
        return list(self._products_by_id.keys())

    def is_restricted(self) -> bool:
        """Whether the catalog limits which products count towards Pro."""
        return bool(self._products_by_id)

    def is_pro_product(self, product_id: str) -> bool:
        """Whether receipts for product_id count towards Pro."""
        return not self.is_restricted() or product_id in self._products_by_id

    def filter_pro_receipts(self, receipts: Iterable[Receipt]) -> List[Receipt]:
        """Keep only receipts for Pro products."""
        return [r for r in receipts if self.is_pro_product(r.product_id)]

    def __len__(self) -> int:
        return len(self._products_by_id)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._products_by_id

    def __repr__(self) -> str:
        return f"ProductCatalog(products={len(self._products_by_id)})"
