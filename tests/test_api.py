"""Tests for the service facade: decoding, derived comparison keys, invalidation."""

import asyncio

import pytest

from trendmate.api import (
    compare_query,
    decode_alerts,
    decode_candidates,
    search_query,
    select_query,
)
from trendmate.models import (
    AlertForm,
    FailureReason,
    FatalFailure,
    LogicalQuery,
    Report,
    Success,
)

REPORT_PAYLOAD = {"content": {"label": "Apple Inc.", "reportData": [
    {"type": "summary", "content": "Open Price: $93.27\nHigh Price: $95.44\nLow Price: $92.90\nClose Price: $94.73"},
]}}


def test_decode_candidates_shapes():
    payload = {"options": [
        {"label": "Apple Inc.", "value": "AAPL", "subtitle": "NASDAQ"},
        {"label": "Apple Hospitality", "value": "APLE"},
        {"subtitle": "no label"},
    ]}
    options = decode_candidates(payload)
    assert [o.value for o in options] == ["AAPL", "APLE"]
    assert options[0].subtitle == "NASDAQ"
    assert decode_candidates({"content": {"options": [{"label": "MSFT"}]}})[0].value == "MSFT"
    assert decode_candidates([{"value": "TSLA"}])[0].label == "TSLA"
    with pytest.raises(ValueError):
        decode_candidates({"content": "nothing here"})


def test_decode_alerts_accepts_array_and_envelope():
    raw = [{"id": 101, "symbol": "AAPL", "alertType": "MA Crossover",
            "condition": "20-day EMA crosses 50-day EMA", "active": "false"}]
    for payload in (raw, {"content": {"alerts": raw}}, {"alerts": raw}):
        (alert,) = decode_alerts(payload)
        assert alert.id == "101"
        assert alert.symbol == "AAPL"
        assert alert.alert_type == "MA Crossover"
        assert alert.active is False
    with pytest.raises(ValueError):
        decode_alerts({"content": {"label": "no alerts key"}})


def test_decoders_coerce_non_text_fields_per_entry():
    options = decode_candidates({"options": [
        {"label": "Apple Inc.", "value": "AAPL", "subtitle": 1},
        {"label": "Microsoft Corp.", "value": "MSFT"},
    ]})
    assert [(o.value, o.subtitle) for o in options] == [("AAPL", "1"), ("MSFT", None)]

    alerts = decode_alerts([
        {"id": 1, "symbol": "AAPL", "timestamp": 1718000000000, "message": 42},
        {"id": 2, "symbol": "MSFT"},
    ])
    assert [a.id for a in alerts] == ["1", "2"]
    assert alerts[0].timestamp == "1718000000000"
    assert alerts[0].message == "42"
    assert alerts[1].timestamp is None


def test_select_is_normalized_and_cached(make_api):
    api, transport = make_api(lambda op, query: Success(payload=REPORT_PAYLOAD))

    async def go():
        first = await api.select("AAPL")
        second = await api.select(" AAPL ")
        return first, second

    first, second = asyncio.run(go())
    assert isinstance(first.payload, Report)
    assert first.payload.metrics.close == 94.73
    assert first == second
    assert transport.calls == [("select-company-9826", "AAPL")]
    assert api.get_cached_report(select_query("AAPL"))[0].kind == "text"
    assert api.get_cached_report(select_query("MSFT")) is None


def test_undecodable_search_payload_is_decode_error(make_api):
    api, _ = make_api(lambda op, query: Success(payload={"content": "oops"}))
    outcome = asyncio.run(api.search("apple"))
    assert isinstance(outcome, FatalFailure)
    assert outcome.reason is FailureReason.DECODE_ERROR
    assert api.cache.get(search_query("apple")) is None


def test_comparison_is_written_under_symbol_pair(make_api):
    api, transport = make_api(lambda op, query: Success(payload=REPORT_PAYLOAD))

    async def go():
        await api.compare("AAPL", "MSFT")
        await api.compare("AAPL", "MSFT")
        await api.compare("MSFT", "AAPL")

    asyncio.run(go())
    assert transport.calls == [
        ("company-report-summarizer-0555", "AAPL, MSFT"),
        ("company-report-summarizer-0555", "MSFT, AAPL"),
    ]
    ab = api.cache.get(compare_query("AAPL", "MSFT"))
    ba = api.cache.get(compare_query("MSFT", "AAPL"))
    assert ab is not None and ba is not None
    assert ab.query != ba.query


def test_alert_mutations_invalidate_alert_lists(make_api):
    alerts = [[{"id": 1, "symbol": "AAPL"}], [{"id": 1, "symbol": "AAPL"}, {"id": 2, "symbol": "TSLA"}]]

    def responder(op, query):
        if op == "fetchalerts-from-table-4625":
            return Success(payload={"content": {"alerts": alerts.pop(0)}})
        return Success(payload={"status": "ok"})

    api, transport = make_api(responder)

    async def go():
        before = await api.list_alerts()
        cached = await api.list_alerts()
        await api.create_alert(AlertForm(symbol="TSLA", alert_type="RSI Alert", condition="below 30"))
        after = await api.list_alerts()
        return before, cached, after

    before, cached, after = asyncio.run(go())
    assert len(before.payload) == 1
    assert cached == before
    assert [a.symbol for a in after.payload] == ["AAPL", "TSLA"]
    assert ("create-alert-9841", "create alert for TSLA with RSI Alert below 30") in transport.calls
    assert LogicalQuery.of("createAlert", "create alert for TSLA with RSI Alert below 30") not in api.cache


def test_delete_and_toggle_build_queries(make_api):
    api, transport = make_api(lambda op, query: Success(payload={}))

    async def go():
        await api.delete_alert("42")
        await api.toggle_alert("42", enable=False)
        await api.toggle_alert("42", enable=True)

    asyncio.run(go())
    assert transport.calls == [
        ("delete-alert-8754", "delete alert 42"),
        ("toggle-alert-3421", "disable alert 42"),
        ("toggle-alert-3421", "enable alert 42"),
    ]


def test_failed_mutation_keeps_alert_cache(make_api):
    def responder(op, query):
        if op == "delete-alert-8754":
            return FatalFailure(reason=FailureReason.HTTP_ERROR, status=500)
        return Success(payload=[{"id": 1}])

    api, _ = make_api(responder)

    async def go():
        await api.list_alerts()
        return await api.delete_alert("1")

    outcome = asyncio.run(go())
    assert isinstance(outcome, FatalFailure)
    assert LogicalQuery.of("alerts") in api.cache


@pytest.mark.integration
def test_live_company_search():
    from trendmate.api import TrendmateApi

    async def go():
        api = TrendmateApi()
        try:
            return await api.search("Apple")
        finally:
            await api.aclose()

    outcome = asyncio.run(go())
    assert isinstance(outcome, Success)
    assert len(outcome.payload) >= 1
