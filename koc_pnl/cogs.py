"""
Cost-of-goods resolution against the inventory export.

Order lines carry a seller SKU and a product name that rarely match the
inventory sheet exactly, so the unit cost is looked up in three tiers:
exact SKU, inventory SKU contained in the order SKU, inventory name
contained in the product name. The first tier that hits wins.
"""
from dataclasses import dataclass
from typing import Optional

from koc_pnl.parsing import normalize_name, normalize_sku

TIER_EXACT = 'exact'
TIER_PARTIAL = 'partial'
TIER_NAME = 'name'


@dataclass(frozen=True)
class CogsMatch:
    unit_cost: float
    tier: Optional[str] = None
    sku: str = ''

    @property
    def found(self):
        return self.tier is not None


NO_MATCH = CogsMatch(0.0)


class InventoryIndex:
    """Lookup tables built once per reconciliation pass.

    The first inventory row wins for a duplicated SKU or name; dict insertion
    order keeps the partial and name tiers scanning in file order.
    """

    def __init__(self, inventory):
        self.by_sku = {}
        self.by_name = {}
        if inventory is None:
            return
        for row in inventory.itertuples(index=False):
            item = (row.sku, float(row.cogs), float(row.stock))
            sku = normalize_sku(row.sku)
            if sku:
                self.by_sku.setdefault(sku, item)
            name = normalize_name(row.name)
            if name:
                self.by_name.setdefault(name, item)

    def __len__(self):
        return len(self.by_sku)

    def match(self, order_sku, product_name=''):
        sku = normalize_sku(order_sku)
        name = normalize_name(product_name)

        if sku:
            hit = self.by_sku.get(sku)
            if hit is not None:
                return CogsMatch(hit[1], TIER_EXACT, hit[0])
            for inv_sku, item in self.by_sku.items():
                if inv_sku in sku:
                    return CogsMatch(item[1], TIER_PARTIAL, item[0])

        if name:
            for inv_name, item in self.by_name.items():
                if inv_name in name:
                    return CogsMatch(item[1], TIER_NAME, item[0])

        return NO_MATCH

    def stock_for(self, sku, product_name=''):
        """Stock of an exact SKU, then of an exact name; None when the item is not in inventory."""
        hit = self.by_sku.get(normalize_sku(sku))
        if hit is None:
            hit = self.by_name.get(normalize_name(product_name))
        return None if hit is None else hit[2]


def resolve_cogs(order_sku, product_name, inventory):
    """Unit cost for one order line, 0 when nothing matches."""
    index = inventory if isinstance(inventory, InventoryIndex) else InventoryIndex(inventory)
    return index.match(order_sku, product_name).unit_cost
