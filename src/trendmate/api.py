"""Service facade: logical operations over the workflow endpoint.

Each operation is a LogicalQuery tag bound to an integration id, a wire
query and a payload decoder.  Reads go through the ResultCache; alert
mutations bypass it and invalidate the alert lists on success.

Comparison results are cached under the symbol pair: the fetch itself is
keyed ``compareSelect("A, B")`` and the decoded report is then written
under the derived key ``compare(A, B)``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from trendmate.cache import ResultCache
from trendmate.config import Settings, get_config
from trendmate.models import (
    Alert,
    AlertForm,
    CompanyOption,
    FailureReason,
    FatalFailure,
    LogicalQuery,
    Report,
    Success,
    TextBlock,
    ChartBlock,
    TableBlock,
)
from trendmate.normalizer import normalize_report
from trendmate.resilience import CancelToken, ResilientClient
from trendmate.transport import Transport

log = logging.getLogger(__name__)

ContentBlock = TextBlock | ChartBlock | TableBlock

# Operation tags
SEARCH = "search"
SELECT = "select"
COMPARE_SELECT = "compareSelect"
COMPARE = "compare"
ALERTS = "alerts"
DAILY_NOTIFICATIONS = "dailyNotifications"
CREATE_ALERT = "createAlert"
DELETE_ALERT = "deleteAlert"
TOGGLE_ALERT = "toggleAlert"

_MUTATIONS = {CREATE_ALERT, DELETE_ALERT, TOGGLE_ALERT}
_ALERT_READS = {ALERTS, DAILY_NOTIFICATIONS}

# tag → Settings attribute holding the integration id
_INTEGRATIONS: dict[str, str] = {
    SEARCH: "search_integration",
    SELECT: "select_integration",
    COMPARE_SELECT: "comparison_integration",
    ALERTS: "alerts_integration",
    DAILY_NOTIFICATIONS: "daily_notification_integration",
    CREATE_ALERT: "create_alert_integration",
    DELETE_ALERT: "delete_alert_integration",
    TOGGLE_ALERT: "toggle_alert_integration",
}


# ═══════════════════════════════════════════════════════════════════════════
#  Query builders
# ═══════════════════════════════════════════════════════════════════════════

def search_query(term: str) -> LogicalQuery:
    return LogicalQuery.of(SEARCH, term.strip())


def select_query(company: str) -> LogicalQuery:
    return LogicalQuery.of(SELECT, company.strip())


def compare_query(symbol1: str, symbol2: str) -> LogicalQuery:
    """Derived cache key for a comparison; argument order is significant."""
    return LogicalQuery.of(COMPARE, symbol1.strip(), symbol2.strip())


def comparison_fetch_query(symbol1: str, symbol2: str) -> LogicalQuery:
    return LogicalQuery.of(COMPARE_SELECT, f"{symbol1.strip()}, {symbol2.strip()}")


def is_alert_read(query: LogicalQuery) -> bool:
    return query.tag in _ALERT_READS


# ═══════════════════════════════════════════════════════════════════════════
#  Payload decoders
# ═══════════════════════════════════════════════════════════════════════════

def _optional_text(value: Any) -> str | None:
    return None if value is None else str(value)


def decode_candidates(payload: Any) -> list[CompanyOption]:
    """Candidate list from ``{options: [...]}``, ``{content: {options}}`` or a bare list."""
    options = payload
    if isinstance(payload, dict):
        options = payload.get("options")
        if options is None and isinstance(payload.get("content"), dict):
            options = payload["content"].get("options")
    if not isinstance(options, list):
        raise ValueError("payload has no candidate options")

    candidates = []
    for raw in options:
        if not isinstance(raw, dict) or not (raw.get("label") or raw.get("value")):
            log.warning("Skipping candidate without label/value: %r", raw)
            continue
        label = str(raw.get("label") or raw.get("value"))
        candidates.append(CompanyOption(
            label=label,
            value=str(raw.get("value") or label),
            subtitle=_optional_text(raw.get("subtitle")),
        ))
    return candidates


def _alert_items(payload: Any) -> list:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        content = payload.get("content")
        if isinstance(content, dict) and isinstance(content.get("alerts"), list):
            return content["alerts"]
        if isinstance(content, list):
            return content
        if isinstance(payload.get("alerts"), list):
            return payload["alerts"]
    raise ValueError("payload has no alert list")


def _first(raw: dict, *keys: str) -> Any:
    for key in keys:
        if raw.get(key) not in (None, ""):
            return raw[key]
    return None


def decode_alerts(payload: Any) -> list[Alert]:
    """Alert list from a bare array or ``{content: {alerts: [...]}}``."""
    alerts = []
    for index, raw in enumerate(_alert_items(payload)):
        if not isinstance(raw, dict):
            log.warning("Skipping alert entry %d: not an object", index)
            continue
        active = _first(raw, "active", "enabled", "isActive")
        if isinstance(active, str):
            active = active.strip().lower() in {"1", "true", "yes", "on", "active", "enabled"}
        alerts.append(Alert(
            id=str(_first(raw, "id", "alertId", "_id") or index),
            symbol=str(_first(raw, "symbol", "ticker") or ""),
            alert_type=str(_first(raw, "alertType", "alert_type", "type") or ""),
            condition=str(_first(raw, "condition") or ""),
            active=True if active is None else bool(active),
            message=_optional_text(_first(raw, "message")),
            timestamp=_optional_text(_first(raw, "timestamp", "createdAt", "created_at")),
        ))
    return alerts


def _passthrough(payload: Any) -> Any:
    return payload


_DECODERS: dict[str, Callable[[Any], Any]] = {
    SEARCH: decode_candidates,
    SELECT: normalize_report,
    COMPARE_SELECT: normalize_report,
    ALERTS: decode_alerts,
    DAILY_NOTIFICATIONS: decode_alerts,
    CREATE_ALERT: _passthrough,
    DELETE_ALERT: _passthrough,
    TOGGLE_ALERT: _passthrough,
}


# ═══════════════════════════════════════════════════════════════════════════
#  Facade
# ═══════════════════════════════════════════════════════════════════════════

class TrendmateApi:
    """Cache-aware client for every workflow operation the dashboard needs."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        client: ResilientClient | None = None,
        cache: ResultCache | None = None,
    ):
        self.config = config or get_config()
        self.client = client or ResilientClient(Transport(self.config), self.config)
        self.cache = cache if cache is not None else ResultCache()

    # ── Core read/write path ─────────────────────────────────────────

    def _wire_query(self, query: LogicalQuery) -> str:
        if query.tag == ALERTS:
            return "latest stock alerts"
        if query.tag == DAILY_NOTIFICATIONS:
            return "daily notifications"
        return query.args[0] if query.args else ""

    def _stale_after(self, tag: str) -> float | None:
        if tag == SEARCH:
            return self.config.search_stale_after
        if tag in _ALERT_READS:
            return self.config.alerts_stale_after
        return None

    async def fetch(
        self,
        query: LogicalQuery,
        cancel: CancelToken | None = None,
    ) -> Success | FatalFailure:
        """Resolve a query: cache first, then resilient send + decode."""
        integration = getattr(self.config, _INTEGRATIONS[query.tag])
        decode = _DECODERS[query.tag]
        wire = self._wire_query(query)

        async def resolve() -> Success | FatalFailure:
            outcome = await self.client.send(integration, wire, cancel=cancel)
            if not isinstance(outcome, Success):
                return outcome
            try:
                return Success(payload=decode(outcome.payload))
            except (ValueError, TypeError) as exc:
                log.warning("Could not decode %s payload: %s", query, exc)
                return FatalFailure(reason=FailureReason.DECODE_ERROR, detail=str(exc))

        if query.tag in _MUTATIONS:
            return await resolve()
        return await self.cache.get_or_fetch(query, resolve, self._stale_after(query.tag))

    # ── Company search / reports ─────────────────────────────────────

    async def search(self, term: str, cancel: CancelToken | None = None) -> Success | FatalFailure:
        return await self.fetch(search_query(term), cancel)

    async def select(self, company: str, cancel: CancelToken | None = None) -> Success | FatalFailure:
        return await self.fetch(select_query(company), cancel)

    async def compare(
        self,
        symbol1: str,
        symbol2: str,
        cancel: CancelToken | None = None,
    ) -> Success | FatalFailure:
        """Comparison report for the ordered pair (symbol1, symbol2)."""
        derived = compare_query(symbol1, symbol2)
        entry = self.cache.get(derived)
        if entry is not None:
            return entry.outcome

        outcome = await self.fetch(comparison_fetch_query(symbol1, symbol2), cancel)
        if isinstance(outcome, Success):
            self.cache.put(derived, outcome)
        return outcome

    def get_cached_report(self, query: LogicalQuery) -> list[ContentBlock] | None:
        entry = self.cache.get(query)
        if entry is None or not isinstance(entry.outcome, Success):
            return None
        report = entry.outcome.payload
        return list(report.blocks) if isinstance(report, Report) else None

    def invalidate(self, predicate: Callable[[LogicalQuery], bool]) -> int:
        return self.cache.invalidate(predicate)

    # ── Alerts ───────────────────────────────────────────────────────

    async def list_alerts(self) -> Success | FatalFailure:
        return await self.fetch(LogicalQuery.of(ALERTS))

    async def daily_notifications(self) -> Success | FatalFailure:
        return await self.fetch(LogicalQuery.of(DAILY_NOTIFICATIONS))

    async def _mutate(self, query: LogicalQuery) -> Success | FatalFailure:
        outcome = await self.fetch(query)
        if isinstance(outcome, Success):
            self.invalidate(is_alert_read)
        return outcome

    async def create_alert(self, form: AlertForm) -> Success | FatalFailure:
        text = f"create alert for {form.symbol} with {form.alert_type} {form.condition}"
        return await self._mutate(LogicalQuery.of(CREATE_ALERT, text))

    async def delete_alert(self, alert_id: str) -> Success | FatalFailure:
        return await self._mutate(LogicalQuery.of(DELETE_ALERT, f"delete alert {alert_id}"))

    async def toggle_alert(self, alert_id: str, enable: bool) -> Success | FatalFailure:
        action = "enable" if enable else "disable"
        return await self._mutate(LogicalQuery.of(TOGGLE_ALERT, f"{action} alert {alert_id}"))

    async def aclose(self) -> None:
        transport = self.client.transport
        if isinstance(transport, Transport):
            await transport.aclose()
