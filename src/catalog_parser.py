"""
Product list extraction for one catalog page.

The catalog renders one `.product-list--list-item` per product. A page with
no such items is how the catalog says "nothing here" (past the last page, or
an empty/unknown category).
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from bs4 import BeautifulSoup

# =============================================================================
# SELECTORS
# =============================================================================

ITEM_SELECTOR = ".product-list--list-item"
TITLE_SELECTOR = ".product-tile--title.product-tile--browsable"
COST_SELECTOR = "div.price-details--wrapper > div.price-control-wrapper"
QUANTITY_SELECTOR = "div.price-details--wrapper > div.price-per-quantity-weight"

PRODUCT_ID_PATTERN = re.compile(r"/products/([^/?#]+)")
WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class RawProduct:
    """A product tile as found on the page, before it is tied to a category."""
    pid: str
    name: str
    cost: str
    quantity: str
    href: str


@dataclass
class ParsedPage:
    """Products extracted from one page plus the number of unusable tiles."""
    products: List[RawProduct] = field(default_factory=list)
    skipped: int = 0

    @property
    def item_count(self) -> int:
        """Every tile on the page, usable or not."""
        return len(self.products) + self.skipped


def _clean(text: Optional[str]) -> str:
    return WHITESPACE.sub(" ", text or "").strip()


def product_id_from_href(href: str) -> str:
    """
    Pull the product id out of a product link.

    `/groceries/en-GB/products/7070980683` -> `7070980683`. Links that do not
    follow the /products/ shape fall back to their last path segment.
    """
    match = PRODUCT_ID_PATTERN.search(href)
    if match:
        return match.group(1)
    path = href.split("?", 1)[0].split("#", 1)[0]
    segments = [s for s in path.split("/") if s]
    return segments[-1] if segments else ""


def _parse_item(item) -> Optional[RawProduct]:
    title = item.select_one(TITLE_SELECTOR)
    if title is None:
        return None

    href = (title.get("href") or "").strip()
    pid = product_id_from_href(href) if href else ""
    if not pid:
        return None

    cost = item.select_one(COST_SELECTOR)
    quantity = item.select_one(QUANTITY_SELECTOR)

    return RawProduct(
        pid=pid,
        name=_clean(title.get_text()),
        cost=_clean(cost.get_text()) if cost else "",
        quantity=_clean(quantity.get_text()) if quantity else "",
        href=href,
    )


def parse_product_page(html: str) -> ParsedPage:
    """
    Extract the product tiles of one listing page, in page order.

    Tiles without a title link or product id are skipped and counted rather
    than failing the page. Returns an empty ParsedPage when the page holds
    no product list at all.
    """
    soup = BeautifulSoup(html or "", "lxml")
    page = ParsedPage()

    for item in soup.select(ITEM_SELECTOR):
        product = _parse_item(item)
        if product is None:
            page.skipped += 1
        else:
            page.products.append(product)

    return page
