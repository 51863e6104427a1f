from chatrelay.metrics import (
    counter_value,
    inc_counter,
    observe_histogram,
    record_enrichment,
    render_metrics,
)


def test_counter_is_rendered_with_labels() -> None:
    before = counter_value("test_render_total", {"kind": "a"})
    inc_counter("test_render_total", {"kind": "a"})

    assert counter_value("test_render_total", {"kind": "a"}) == before + 1
    assert "# TYPE test_render_total counter" in render_metrics()
    assert 'test_render_total{kind="a"}' in render_metrics()


def test_histogram_buckets_are_cumulative() -> None:
    observe_histogram("test_render_seconds", {"p": "x"}, 0.2)
    observe_histogram("test_render_seconds", {"p": "x"}, 3.0)

    text = render_metrics()

    assert 'test_render_seconds_bucket{le="0.25",p="x"} 1' in text
    assert 'test_render_seconds_bucket{le="5.0",p="x"} 2' in text
    assert 'test_render_seconds_bucket{le="+Inf",p="x"} 2' in text
    assert 'test_render_seconds_count{p="x"} 2' in text


def test_enrichment_outcomes_are_counted() -> None:
    before = counter_value("relay_enrichment_total", {"outcome": "fallback"})
    record_enrichment("fallback")
    assert counter_value("relay_enrichment_total", {"outcome": "fallback"}) == before + 1
