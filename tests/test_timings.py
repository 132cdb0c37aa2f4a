import pytest

from orderwatch.infra import timings


@pytest.fixture(autouse=True)
def clean_registry():
    timings.reset()
    yield
    timings.reset()


def test_snapshot_summarises_each_kind():
    for v in (0.1, 0.2, 0.3):
        timings.record_timing("fetch.order_details", v)
    timings.record_timing("lookup.latest_order", 0.05)
    snap = timings.snapshot()
    assert [s["kind"] for s in snap] == [
        "fetch.order_details", "lookup.latest_order",
    ]
    fetch = snap[0]
    assert fetch["n"] == 3
    assert fetch["mean"] == pytest.approx(0.2)
    assert fetch["max"] == pytest.approx(0.3)
    assert snap[1]["std"] == 0.0


async def test_timeit_records_even_on_error():
    with pytest.raises(RuntimeError):
        async with timings.timeit("fetch.order_details"):
            raise RuntimeError("db down")
    assert timings.snapshot()[0]["n"] == 1
