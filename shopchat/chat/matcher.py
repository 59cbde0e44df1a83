"""Locate the product a customer message refers to."""
from __future__ import annotations

from typing import Iterable, List, Optional

from .classifier import normalize
from .models import Product
from .shops import ShopFactStore


def tokenize(text: str) -> List[str]:
    return normalize(text).split()


def tokens_overlap(message_tokens: Iterable[str], name_tokens: Iterable[str]) -> bool:
    """Bidirectional substring containment between any pair of tokens."""
    message_tokens = list(message_tokens)
    return any(
        name_token in message_token or message_token in name_token
        for name_token in name_tokens
        for message_token in message_tokens
    )


class ProductMatcher:
    """First-hit product lookup by word overlap.

    Products are scanned in the order the store returns them and the first
    candidate wins. There is no scoring, so ``"price"`` will match a product
    called ``"Rice"`` if it is listed before the one the customer meant.
    """

    def __init__(self, shops: ShopFactStore) -> None:
        self._shops = shops

    def find_product(self, message: str, shop_id: str) -> Optional[Product]:
        """Return the first product whose name overlaps ``message``.

        Raises :class:`~shopchat.chat.errors.ShopFactsUnavailable` when the
        product list cannot be read.
        """
        message_tokens = tokenize(message)
        if not message_tokens:
            return None
        for product in self._shops.list_products(shop_id):
            if tokens_overlap(message_tokens, tokenize(product.name)):
                return product
        return None
