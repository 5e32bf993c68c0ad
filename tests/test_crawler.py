import asyncio

import pytest

from catalog_parser import RawProduct
from crawler import (
    AdmissionPolicy,
    CatalogCrawler,
    Category,
    PageOutcome,
    RunState,
    build_categories,
)
from tracker import CategoryStatus

from conftest import make_page_html


def _crawler(categories, transport, **kwargs) -> CatalogCrawler:
    kwargs.setdefault("base_url", "https://shop.example")
    kwargs.setdefault("page_limit", 2)
    kwargs.setdefault("batch_length", 1)
    return CatalogCrawler(categories, transport, **kwargs)


def _products(count: int, start: int = 1):
    return [
        RawProduct(pid=str(i), name=f"P{i}", cost="RM 1", quantity="1 each",
                   href=f"/groceries/en-GB/products/{i}")
        for i in range(start, start + count)
    ]


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------


def test_start_admits_first_batch_in_list_order(categories, transport):
    crawler = _crawler(categories, transport, batch_length=2)
    admitted = crawler.start()

    assert [c.label for c in admitted] == ["A", "B"]
    assert [r.context.page for r in transport.queued] == [1, 1]
    assert transport.queued[0].url == "https://shop.example/groceries/shop/cat-a/all?page=1&count=2"
    assert crawler.tracker.status_of("A") is CategoryStatus.RUNNING
    assert crawler.tracker.status_of("C") is CategoryStatus.PENDING
    assert crawler.state.cursor == 2


def test_admit_next_batch_is_a_noop_when_list_exhausted(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()
    transport.complete("A", make_page_html(1))

    assert crawler.admit_next_batch() == []
    assert transport.queued == []


def test_slot_policy_refills_as_soon_as_a_category_ends(categories, transport):
    crawler = _crawler(categories, transport, batch_length=2, admission=AdmissionPolicy.SLOT)
    crawler.start()

    transport.complete("A", make_page_html(1))

    assert crawler.tracker.status_of("A") is CategoryStatus.COMPLETED
    assert transport.pages_for("C") == [1]
    assert crawler.running_count() == 2


def test_batch_policy_waits_for_idle(categories, transport):
    crawler = _crawler(categories, transport, batch_length=2, admission=AdmissionPolicy.BATCH)
    crawler.start()

    transport.complete("A", make_page_html(1))
    assert transport.pages_for("C") == []

    transport.complete("B", make_page_html(1))
    assert transport.pages_for("C") == []

    crawler.on_idle()
    assert transport.pages_for("C") == [1]


# ---------------------------------------------------------------------------
# Page transitions
# ---------------------------------------------------------------------------


def test_full_page_requests_exactly_one_more_page(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    transport.complete("A", make_page_html(2))

    assert transport.pages_for("A") == [1, 2]
    assert len(transport.queued) == 1
    assert crawler.tracker.status_of("A") is CategoryStatus.RUNNING


def test_short_page_completes_without_another_request(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    transport.complete("A", make_page_html(1))

    assert transport.pages_for("A") == [1]
    assert transport.queued == []
    assert crawler.tracker.status_of("A") is CategoryStatus.COMPLETED


def test_empty_first_page_is_an_error_with_one_log_entry(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    transport.complete("A", make_page_html(0))

    assert crawler.tracker.status_of("A") is CategoryStatus.ERROR
    assert crawler.tracker.errors == ["A - No data found"]
    assert crawler.tracker.snapshot().row("A").pages == 1


def test_empty_later_page_completes_without_error(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    transport.complete("A", make_page_html(2))
    transport.complete("A", make_page_html(0))

    assert crawler.tracker.status_of("A") is CategoryStatus.COMPLETED
    assert crawler.tracker.errors == []
    row = crawler.tracker.snapshot().row("A")
    assert (row.pages, row.items) == (2, 2)


def test_failed_first_page_is_an_error(transport):
    crawler = _crawler([Category("C", "c")], transport)
    crawler.start()

    transport.fail("C")

    assert crawler.tracker.status_of("C") is CategoryStatus.ERROR
    assert crawler.tracker.errors == ["C - Parsing failed"]
    assert transport.queued == []

    crawler.on_idle()
    assert crawler.state.output == {}


def test_failed_later_page_is_a_partial_error_and_keeps_records(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    transport.complete("A", make_page_html(2))
    transport.fail("A")

    assert crawler.tracker.status_of("A") is CategoryStatus.PARTIAL
    assert crawler.tracker.errors == ["A - Parsing failed"]
    assert len(crawler.state.records["A"]) == 2
    assert crawler.tracker.snapshot().row("A").pages == 2


def test_malformed_tiles_are_logged_and_count_toward_page_size(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    crawler.on_page_result(Category("A", "a"), 1, PageOutcome(products=_products(1), skipped=1))

    assert crawler.tracker.errors == ["A - Skipped 1 malformed item(s) on page 1"]
    assert len(crawler.state.records["A"]) == 1
    # One good + one malformed tile is a full page of 2
    assert transport.pages_for("A") == [1, 2]


def test_records_carry_category_and_absolute_url(transport):
    crawler = _crawler([Category("Fresh Food", "fresh-food")], transport)
    crawler.start()

    transport.complete("Fresh Food", make_page_html(1, start=7070980683))

    record = crawler.state.records["Fresh Food"][0]
    assert record.pid == "7070980683"
    assert record.name == "Product 7070980683"
    assert record.cost == "RM 7070980683.00"
    assert record.category == "Fresh Food"
    assert record.url == "https://shop.example/groceries/en-GB/products/7070980683"


def test_result_for_a_page_not_in_flight_is_rejected(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    with pytest.raises(RuntimeError):
        crawler.on_page_result(Category("A", "a"), 2, PageOutcome(products=_products(1)))


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


def test_two_category_scenario_with_batch_admission(transport):
    crawler = _crawler(
        [Category("A", "a"), Category("B", "b")],
        transport,
        admission=AdmissionPolicy.BATCH,
    )
    crawler.start()

    transport.complete("A", make_page_html(2))
    assert transport.pages_for("A") == [1, 2]

    transport.complete("A", make_page_html(1, start=3))
    assert crawler.tracker.status_of("A") is CategoryStatus.COMPLETED
    assert len(crawler.state.records["A"]) == 3

    crawler.on_idle()
    assert transport.pages_for("B") == [1]

    transport.complete("B", make_page_html(0))
    assert crawler.tracker.status_of("B") is CategoryStatus.ERROR
    assert "B - No data found" in crawler.tracker.errors

    crawler.on_idle()
    assert crawler.finished
    assert list(crawler.state.output) == ["A"]
    assert [r.pid for r in crawler.state.output["A"]] == ["1", "2", "3"]


def test_page_counts_match_dispatched_pages(categories, transport):
    crawler = _crawler(categories, transport, batch_length=3)
    crawler.start()

    transport.complete("A", make_page_html(2))
    transport.complete("B", make_page_html(0))
    transport.fail("C")
    transport.complete("A", make_page_html(2, start=3))
    transport.complete("A", make_page_html(1, start=5))

    snapshot = crawler.tracker.snapshot()
    for category in categories:
        assert snapshot.row(category.label).pages == crawler.state.pages_dispatched[category.label]
        assert snapshot.row(category.label).items == len(crawler.state.records[category.label])
    assert snapshot.row("A").items == 5


def test_running_never_exceeds_batch_length(transport):
    categories = [Category(str(i), f"c{i}") for i in range(6)]
    crawler = _crawler(categories, transport, batch_length=2)
    peaks = []
    crawler.add_observer(lambda snapshot: peaks.append(snapshot.count(CategoryStatus.RUNNING)))
    crawler.start()

    while transport.queued:
        label = transport.queued[0].context.category.label
        page = transport.queued[0].context.page
        transport.complete(label, make_page_html(2 if page < 3 else 1))

    crawler.on_idle()
    assert crawler.finished
    assert max(peaks) == 2
    assert all(crawler.tracker.status_of(c.label) is CategoryStatus.COMPLETED for c in categories)


# ---------------------------------------------------------------------------
# Finalization
# ---------------------------------------------------------------------------


def test_finalization_happens_once(transport):
    crawler = _crawler([Category("A", "a")], transport)
    calls = []
    crawler.start()
    transport.complete("A", make_page_html(1))

    crawler.add_observer(lambda snapshot: calls.append(snapshot))
    crawler.on_idle()
    crawler.on_idle()

    assert crawler.finished
    assert len(calls) == 1


def test_finalizing_with_work_in_flight_is_an_error(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    with pytest.raises(RuntimeError):
        crawler.on_idle()
    assert not crawler.finished


def test_observers_see_every_transition(transport):
    crawler = _crawler([Category("A", "a")], transport)
    seen = []
    crawler.add_observer(lambda snapshot: seen.append(snapshot.row("A").status))

    crawler.start()
    transport.complete("A", make_page_html(2))
    transport.complete("A", make_page_html(1))

    assert seen == [CategoryStatus.RUNNING, CategoryStatus.RUNNING, CategoryStatus.COMPLETED]


def test_flush_writes_each_group_and_logs_failures(transport):
    class _Sink:
        def __init__(self):
            self.calls = []

        async def write_category(self, label, records):
            if label == "B":
                raise OSError("disk full")
            self.calls.append((label, len(records)))
            return f"/tmp/{label}.csv"

    sink = _Sink()
    crawler = _crawler([Category("A", "a"), Category("B", "b")], transport, sink=sink, batch_length=2)
    crawler.start()
    transport.complete("A", make_page_html(1))
    transport.complete("B", make_page_html(1))
    crawler.on_idle()

    written = asyncio.run(crawler.flush(crawler.state.output))

    assert sink.calls == [("A", 1)]
    assert written == {"A": "/tmp/A.csv"}
    assert crawler.tracker.errors == ["B - Saving failed: disk full"]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_duplicate_labels_are_rejected(transport):
    with pytest.raises(ValueError):
        _crawler([Category("A", "a"), Category("A", "b")], transport)


def test_invalid_limits_are_rejected(transport):
    with pytest.raises(ValueError):
        _crawler([Category("A", "a")], transport, page_limit=0)
    with pytest.raises(ValueError):
        _crawler([Category("A", "a")], transport, batch_length=0)


def test_build_categories():
    categories = build_categories([{"label": " Pets ", "tag": "pets"}])
    assert categories == [Category("Pets", "pets")]

    with pytest.raises(ValueError):
        build_categories([{"label": "Pets", "tag": "pets"}, {"label": "Pets", "tag": "x"}])
    with pytest.raises(ValueError):
        build_categories([{"label": "Pets", "tag": ""}])


def test_labels_sharing_an_output_file_are_rejected(transport):
    with pytest.raises(ValueError, match="freshfood.csv"):
        _crawler([Category("Fresh Food", "a"), Category("FreshFood", "b")], transport)
    with pytest.raises(ValueError):
        build_categories([{"label": "Wine/Beer", "tag": "a"}, {"label": "Wine-Beer", "tag": "b"}])


def test_first_page_with_only_malformed_tiles_is_an_error(transport):
    crawler = _crawler([Category("A", "a")], transport)
    crawler.start()

    crawler.on_page_result(Category("A", "a"), 1, PageOutcome(skipped=1))

    assert crawler.tracker.status_of("A") is CategoryStatus.ERROR
    assert crawler.tracker.errors == [
        "A - Skipped 1 malformed item(s) on page 1",
        "A - No data found",
    ]
    assert len(transport.queued) == 1  # only the original page 1 request
    assert transport.pages_for("A") == [1]


def test_plain_dict_run_state_is_accepted(transport):
    state = RunState(records={}, pages_dispatched={})
    crawler = _crawler([Category("A", "a")], transport, state=state)
    crawler.start()

    transport.complete("A", make_page_html(2))
    transport.complete("A", make_page_html(1, start=3))
    crawler.on_idle()

    assert state.pages_dispatched == {"A": 2}
    assert [r.pid for r in state.output["A"]] == ["1", "2", "3"]
