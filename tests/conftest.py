from pathlib import Path
from typing import List, Optional

import pytest

from crawler import Category
from transport import FetchError, FetchRequest

FIXTURES = Path(__file__).parent / "fixtures"

ITEM_TEMPLATE = """
<li class="product-list--list-item">
  <a class="product-tile--title product-tile--browsable" href="/groceries/en-GB/products/{pid}">Product {pid}</a>
  <div class="price-details--wrapper">
    <div class="price-control-wrapper">RM {pid}.00</div>
    <div class="price-per-quantity-weight">RM {pid}.00/each</div>
  </div>
</li>
"""


def read_fixture(name: str) -> str:
    return (FIXTURES / name).read_text(encoding="utf-8")


def make_page_html(count: int, start: int = 1) -> str:
    """A listing page holding `count` well-formed product tiles."""
    items = "".join(ITEM_TEMPLATE.format(pid=start + i) for i in range(count))
    return f"<html><body><ul class='product-list'>{items}</ul></body></html>"


class FakeTransport:
    """Records enqueued requests; tests complete them by hand."""

    def __init__(self):
        self.on_idle = None
        self.queued: List[FetchRequest] = []
        self.history: List[FetchRequest] = []

    def enqueue(self, request: FetchRequest):
        self.queued.append(request)
        self.history.append(request)

    def pages_for(self, label: str) -> List[int]:
        return [r.context.page for r in self.history if r.context.category.label == label]

    def take(self, label: str) -> FetchRequest:
        for request in self.queued:
            if request.context.category.label == label:
                self.queued.remove(request)
                return request
        raise AssertionError(f"no queued request for {label}")

    def complete(self, label: str, body: Optional[str] = None, error: Optional[FetchError] = None):
        request = self.take(label)
        request.on_complete(error, body)
        return request

    def fail(self, label: str):
        request = self.take(label)
        request.on_complete(FetchError(request.url, status=503, attempts=11), None)
        return request


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def categories() -> List[Category]:
    return [Category("A", "cat-a"), Category("B", "cat-b"), Category("C", "cat-c")]
