"""
Catalog crawl orchestration.

Walks an ordered list of catalog categories, paginating each one page at a
time, with at most `batch_length` categories active at once.

Per category the pages are strictly sequential: page N+1 is only requested
once page N has been parsed, because the catalog gives no "last page" marker.
A page holding `page_limit` items means "there may be more"; a shorter page
is the last one; an empty page ends the category (and is an error when it is
page 1).

All state changes happen in callbacks delivered on the event loop thread, so
they are serialized without locks.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence, Set
from urllib.parse import urljoin

from catalog_parser import ParsedPage, RawProduct, parse_product_page
from config import BASE_URL, BATCH_LENGTH, CATEGORY_URL_TEMPLATE, PAGE_LIMIT
from storage import category_slug
from tracker import CategoryStatus, StatisticsTracker, TrackerSnapshot
from transport import FetchError, FetchRequest


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(frozen=True)
class Category:
    """One catalog partition. `label` is the display/grouping key, `tag` the URL slug."""
    label: str
    tag: str


@dataclass(frozen=True)
class ProductRecord:
    """One product row as written to the output files."""
    pid: str
    name: str
    cost: str
    quantity: str
    category: str
    url: str


@dataclass(frozen=True)
class PageRequest:
    """A page fetch issued for a category."""
    category: Category
    page: int
    url: str


@dataclass
class PageOutcome:
    """What came back for one page: a terminal fetch failure or parsed products."""
    error: Optional[Exception] = None
    products: List[RawProduct] = field(default_factory=list)
    skipped: int = 0

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def item_count(self) -> int:
        return len(self.products) + self.skipped

    @classmethod
    def from_parsed(cls, page: ParsedPage) -> "PageOutcome":
        return cls(products=list(page.products), skipped=page.skipped)


class AdmissionPolicy(Enum):
    """When waiting categories get admitted."""
    SLOT = "slot"    # As soon as an active category reaches a terminal status
    BATCH = "batch"  # Only when the transport has fully drained


@dataclass
class RunState:
    """Everything the crawl mutates, owned by one CatalogCrawler."""
    cursor: int = 0
    records: Dict[str, List[ProductRecord]] = field(default_factory=lambda: defaultdict(list))
    pages_dispatched: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    in_flight: Dict[str, int] = field(default_factory=dict)
    active: Set[str] = field(default_factory=set)
    terminal: Set[str] = field(default_factory=set)
    finalized: bool = False
    output: Dict[str, List[ProductRecord]] = field(default_factory=dict)


def check_unique_labels(categories: Sequence[Category]):
    """
    Labels key the stats table and name the output files, so both the label
    and its file slug must be unique ("Fresh Food" and "FreshFood" collide).
    """
    labels = {}
    slugs = {}
    for category in categories:
        if category.label in labels:
            raise ValueError(f"Duplicate category label: {category.label!r}")
        slug = category_slug(category.label)
        if slug in slugs:
            raise ValueError(
                f"Categories {slugs[slug]!r} and {category.label!r} would share the output file {slug}.csv"
            )
        labels[category.label] = category
        slugs[slug] = category.label


def build_categories(entries: Sequence[dict]) -> List[Category]:
    """Turn `{"label", "tag"}` mappings into Categories, rejecting duplicate labels."""
    categories = []
    for entry in entries:
        label = str(entry["label"]).strip()
        tag = str(entry["tag"]).strip()
        if not label or not tag:
            raise ValueError(f"Category needs both a label and a tag: {entry!r}")
        categories.append(Category(label=label, tag=tag))
    check_unique_labels(categories)
    return categories


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class CatalogCrawler:
    """
    Drives the transport one page at a time per category.

    - Admits categories in list order, never more than `batch_length` active
    - Decides pagination from the item count of each page
    - Keeps the StatisticsTracker current and notifies observers on every transition
    - Groups the collected records per category once everything has drained
    """

    def __init__(
        self,
        categories: Sequence[Category],
        transport,
        sink=None,
        base_url: str = BASE_URL,
        page_limit: int = PAGE_LIMIT,
        batch_length: int = BATCH_LENGTH,
        admission: AdmissionPolicy = AdmissionPolicy.SLOT,
        tracker: Optional[StatisticsTracker] = None,
        state: Optional[RunState] = None,
        parser: Callable[[str], ParsedPage] = parse_product_page,
    ):
        if page_limit < 1:
            raise ValueError("page_limit must be at least 1")
        if batch_length < 1:
            raise ValueError("batch_length must be at least 1")
        check_unique_labels(categories)

        self.categories = list(categories)
        self.transport = transport
        self.sink = sink
        self.base_url = base_url.rstrip("/")
        self.page_limit = page_limit
        self.batch_length = batch_length
        self.admission = admission
        self.tracker = tracker or StatisticsTracker()
        self.state = state or RunState()
        self.parser = parser
        self._observers: List[Callable[[TrackerSnapshot], None]] = []
        self.written: Dict[str, object] = {}

        for index, category in enumerate(self.categories):
            self.tracker.register_category(index, category)

        self.transport.on_idle = self.on_idle

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def add_observer(self, callback: Callable[[TrackerSnapshot], None]):
        """Call `callback(snapshot)` after every state transition."""
        self._observers.append(callback)

    def _notify(self):
        if not self._observers:
            return
        snapshot = self.tracker.snapshot()
        for callback in self._observers:
            callback(snapshot)

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def page_url(self, category: Category, page: int) -> str:
        return CATEGORY_URL_TEMPLATE.format(
            base_url=self.base_url,
            tag=category.tag,
            page=page,
            page_limit=self.page_limit,
        )

    def _dispatch(self, category: Category, page: int) -> PageRequest:
        label = category.label
        if label in self.state.in_flight:
            raise RuntimeError(
                f"{label}: page {page} requested while page {self.state.in_flight[label]} is in flight"
            )

        request = PageRequest(category=category, page=page, url=self.page_url(category, page))
        self.state.in_flight[label] = page
        self.state.pages_dispatched[label] = self.state.pages_dispatched.get(label, 0) + 1
        self.transport.enqueue(FetchRequest(
            url=request.url,
            on_complete=partial(self._on_fetch_complete, request),
            context=request,
        ))
        return request

    def _admit(self, slots: int) -> List[Category]:
        if slots <= 0:
            return []
        admitted = self.categories[self.state.cursor:self.state.cursor + slots]
        self.state.cursor += len(admitted)
        for category in admitted:
            self.state.active.add(category.label)
            self.tracker.record_status(category.label, CategoryStatus.RUNNING)
            self._dispatch(category, 1)
        return admitted

    def start(self) -> List[Category]:
        """Admit the first batch. Must only be called once."""
        admitted = self.admit_next_batch()
        self._notify()
        return admitted

    def admit_next_batch(self) -> List[Category]:
        """
        Admit unadmitted categories, in list order, up to the free batch slots.

        A no-op once the cursor has passed the end of the category list.
        """
        return self._admit(self.batch_length - len(self.state.active))

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _on_fetch_complete(self, request: PageRequest, error: Optional[FetchError], body: Optional[str]):
        """Transport completion callback: parse the body, then transition."""
        if error is not None:
            outcome = PageOutcome(error=error)
        else:
            outcome = PageOutcome.from_parsed(self.parser(body or ""))
        self.on_page_result(request.category, request.page, outcome)

    def _to_record(self, category: Category, product: RawProduct) -> ProductRecord:
        return ProductRecord(
            pid=product.pid,
            name=product.name,
            cost=product.cost,
            quantity=product.quantity,
            category=category.label,
            url=urljoin(self.base_url + "/", product.href),
        )

    def _finish(self, category: Category, status: CategoryStatus):
        label = category.label
        self.tracker.record_status(label, status)
        self.state.active.discard(label)
        self.state.terminal.add(label)
        if self.admission is AdmissionPolicy.SLOT:
            self.admit_next_batch()

    def on_page_result(self, category: Category, page: int, outcome: PageOutcome):
        """
        Apply the result of one page to the category's state.

        1. Fetch failed: log it, ERROR on page 1 (PARTIAL later), stop.
        2. No items: ERROR + "No data found" on page 1, COMPLETED later, stop.
           A page 1 whose tiles are all malformed counts as "No data found" too.
        3. A full page (>= page_limit items): keep the records, request page + 1.
        4. A short page: keep the records, COMPLETED.
        """
        label = category.label
        if self.state.in_flight.get(label) != page:
            raise RuntimeError(f"{label}: unexpected result for page {page}")
        del self.state.in_flight[label]

        self.tracker.record_page_increment(label)

        if outcome.failed:
            self.tracker.record_error(f"{label} - Parsing failed")
            self._finish(category, CategoryStatus.ERROR if page == 1 else CategoryStatus.PARTIAL)

        elif outcome.item_count == 0:
            if page == 1:
                self.tracker.record_error(f"{label} - No data found")
                self._finish(category, CategoryStatus.ERROR)
            else:
                self._finish(category, CategoryStatus.COMPLETED)

        else:
            if outcome.skipped:
                self.tracker.record_error(
                    f"{label} - Skipped {outcome.skipped} malformed item(s) on page {page}"
                )
            records = [self._to_record(category, product) for product in outcome.products]
            self.state.records.setdefault(label, []).extend(records)
            self.tracker.record_item_increment(label, len(records))

            if page == 1 and not records:
                # Tiles but nothing usable on the first page
                self.tracker.record_error(f"{label} - No data found")
                self._finish(category, CategoryStatus.ERROR)
            elif outcome.item_count >= self.page_limit:
                self.tracker.record_status(label, CategoryStatus.RUNNING)
                self._dispatch(category, page + 1)
            else:
                self._finish(category, CategoryStatus.COMPLETED)

        self._notify()

    def on_idle(self):
        """
        Transport drain callback.

        Admits the next batch while categories are waiting, otherwise
        finalizes the run (exactly once).
        """
        if self.state.finalized:
            return
        if self.state.cursor < len(self.categories):
            self.admit_next_batch()
            self._notify()
            return
        self._finalize()

    def _finalize(self):
        unfinished = sorted(self.state.active | set(self.state.in_flight))
        if unfinished:
            raise RuntimeError(f"Finalizing with unfinished categories: {', '.join(unfinished)}")

        self.state.finalized = True
        self.state.output = self.collected_groups()
        self._notify()

    # -------------------------------------------------------------------------
    # Results
    # -------------------------------------------------------------------------

    def collected_groups(self) -> Dict[str, List[ProductRecord]]:
        """Records per category label, in category order, skipping empty categories."""
        return {
            category.label: list(self.state.records[category.label])
            for category in self.categories
            if self.state.records.get(category.label)
        }

    def running_count(self) -> int:
        return sum(
            1 for row in self.tracker.snapshot().rows
            if row.status is CategoryStatus.RUNNING
        )

    @property
    def finished(self) -> bool:
        return self.state.finalized

    async def flush(self, groups: Dict[str, List[ProductRecord]]) -> Dict[str, object]:
        """Hand every group to the sink. A failed write is logged, not fatal."""
        written = {}
        if self.sink is None:
            return written
        for label, records in groups.items():
            try:
                written[label] = await self.sink.write_category(label, records)
            except OSError as e:
                self.tracker.record_error(f"{label} - Saving failed: {e}")
        self.written.update(written)
        self._notify()
        return written

    async def run(self) -> Dict[str, List[ProductRecord]]:
        """
        Crawl every category, then write the results.

        When the transport is stopped early, whatever was collected so far
        is still written.
        """
        self.start()
        await self.transport.run()
        groups = self.state.output if self.state.finalized else self.collected_groups()
        await self.flush(groups)
        return groups
