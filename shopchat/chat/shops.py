"""Read access to shop status, products and quick-reply templates.

Shops and products are owned by the catalog subsystem; this module only reads
them. :class:`PostgresShopFactStore` translates driver errors into
:class:`~shopchat.chat.errors.ShopFactsUnavailable` so callers can degrade
gracefully.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Protocol

import psycopg
from psycopg.rows import dict_row

from .errors import ShopFactsUnavailable
from .models import Product, ShopStatus


class ShopFactStore(Protocol):
    """Read-only view over the catalog used by the auto-responder."""

    def get_shop_status(self, shop_id: str) -> Optional[ShopStatus]: ...

    def list_products(self, shop_id: str) -> List[Product]: ...

    def list_owned_shop_ids(self, owner_id: str) -> List[str]: ...

    def list_quick_reply_templates(self, shop_id: str, limit: int = 6) -> List[Dict[str, Any]]: ...


class PostgresShopFactStore:
    """PostgreSQL implementation of :class:`ShopFactStore`."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def _cursor(self):
        return self._conn.cursor(row_factory=dict_row)

    def _fetch(self, query: str, params: tuple) -> List[Dict[str, Any]]:
        # Savepoint: a failed read must not abort the caller's transaction.
        try:
            with self._conn.transaction(), self._cursor() as cur:
                cur.execute(query, params)
                return cur.fetchall()
        except psycopg.Error as exc:
            raise ShopFactsUnavailable(str(exc)) from exc

    def get_shop_status(self, shop_id: str) -> Optional[ShopStatus]:
        rows = self._fetch(
            "SELECT id, name, is_open, opening_hours, owner_id FROM shops WHERE id = %s",
            (shop_id,),
        )
        if not rows:
            return None
        row = rows[0]
        return ShopStatus(
            id=str(row["id"]),
            name=row["name"],
            is_open=bool(row["is_open"]),
            opening_hours=row["opening_hours"],
            owner_id=str(row["owner_id"]) if row["owner_id"] is not None else None,
        )

    def list_products(self, shop_id: str) -> List[Product]:
        rows = self._fetch(
            """
            SELECT id, name, price, is_available, stock_quantity
            FROM products
            WHERE shop_id = %s
            """,
            (shop_id,),
        )
        return [_row_to_product(row) for row in rows]

    def list_owned_shop_ids(self, owner_id: str) -> List[str]:
        rows = self._fetch("SELECT id FROM shops WHERE owner_id = %s", (owner_id,))
        return [str(row["id"]) for row in rows]

    def list_quick_reply_templates(self, shop_id: str, limit: int = 6) -> List[Dict[str, Any]]:
        rows = self._fetch(
            """
            SELECT id, reply_text, category
            FROM quick_reply_templates
            WHERE shop_id = %s AND is_active
            ORDER BY created_at
            LIMIT %s
            """,
            (shop_id, limit),
        )
        return [dict(row) for row in rows]


def _row_to_product(row: Dict[str, Any]) -> Product:
    return Product(
        id=str(row["id"]),
        name=row["name"],
        price=Decimal(str(row["price"])),
        is_available=bool(row["is_available"]),
        stock_quantity=int(row["stock_quantity"] or 0),
    )


# ---------------------------------------------------------------------------
# In-memory store (useful for testing and sandbox environments)


class InMemoryShopFactStore(ShopFactStore):
    def __init__(self) -> None:
        self._shops: Dict[str, ShopStatus] = {}
        self._products: Dict[str, List[Product]] = {}
        self._templates: Dict[str, List[Dict[str, Any]]] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise ShopFactsUnavailable("shop fact store is unavailable")

    def add_shop(self, shop: ShopStatus, products: Iterable[Product] = ()) -> ShopStatus:
        self._shops[shop.id] = shop
        self._products[shop.id] = list(products)
        return shop

    def add_product(self, shop_id: str, product: Product) -> Product:
        self._products.setdefault(shop_id, []).append(product)
        return product

    def add_quick_reply_template(
        self, shop_id: str, reply_text: str, category: str, *, is_active: bool = True
    ) -> Dict[str, Any]:
        templates = self._templates.setdefault(shop_id, [])
        template = {
            "id": str(len(templates) + 1),
            "reply_text": reply_text,
            "category": category,
            "is_active": is_active,
        }
        templates.append(template)
        return template

    def get_shop_status(self, shop_id: str) -> Optional[ShopStatus]:
        self._check()
        return self._shops.get(shop_id)

    def list_products(self, shop_id: str) -> List[Product]:
        self._check()
        return list(self._products.get(shop_id, []))

    def list_owned_shop_ids(self, owner_id: str) -> List[str]:
        self._check()
        return [shop.id for shop in self._shops.values() if shop.owner_id == owner_id]

    def list_quick_reply_templates(self, shop_id: str, limit: int = 6) -> List[Dict[str, Any]]:
        self._check()
        active = [
            {k: v for k, v in t.items() if k != "is_active"}
            for t in self._templates.get(shop_id, [])
            if t["is_active"]
        ]
        return active[:limit]
