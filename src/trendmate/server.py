"""Trendmate MCP server: the workflow core exposed as tools.

Tool hierarchy
──────────────
  Companies
    1. search_company        — free-text name → candidate companies
    2. company_report        — one company → normalized AI report
    3. compare_companies     — ordered pair → normalized comparison report

  Alerts
    4. list_alerts           — current alert subscriptions
    5. daily_notifications   — today's triggered notifications
    6. create_alert          — subscribe to a new alert
    7. delete_alert          — remove an alert
    8. toggle_alert          — enable / disable an alert
"""

from __future__ import annotations

import logging

from fastmcp import FastMCP

from trendmate.api import TrendmateApi
from trendmate.config import get_config
from trendmate.models import AlertForm, FatalFailure, Success

log = logging.getLogger(__name__)

mcp = FastMCP(name="Trendmate")

# Lazy singleton, one cache per server process
_api: TrendmateApi | None = None


def _get_api() -> TrendmateApi:
    global _api
    if _api is None:
        _api = TrendmateApi()
    return _api


def _unwrap(outcome: Success | FatalFailure):
    """Return the payload or raise with the user-facing reason."""
    if isinstance(outcome, FatalFailure):
        raise ValueError(f"{outcome.user_error.value}: {outcome.detail}")
    return outcome.payload


def _dump(payload) -> list[dict] | dict:
    if isinstance(payload, list):
        return [item.model_dump() for item in payload]
    return payload.model_dump()


# ═══════════════════════════════════════════════════════════════════════════
#  COMPANIES
# ═══════════════════════════════════════════════════════════════════════════


@mcp.tool()
async def search_company(query: str) -> list[dict]:
    """Search for companies by name or ticker.

    Returns candidates with a display label, the value to pass to
    company_report / compare_companies, and an optional subtitle.
    """
    return _dump(_unwrap(await _get_api().search(query)))


@mcp.tool()
async def company_report(company: str) -> dict:
    """Generate the AI report for one company.

    The report is an ordered list of text, chart and table blocks plus an
    OHLCV metrics snapshot when the report text contains one.
    """
    return _dump(_unwrap(await _get_api().select(company)))


@mcp.tool()
async def compare_companies(symbol1: str, symbol2: str) -> dict:
    """Compare two companies side by side.  Order matters: symbol1 is the left side."""
    return _dump(_unwrap(await _get_api().compare(symbol1, symbol2)))


# ═══════════════════════════════════════════════════════════════════════════
#  ALERTS
# ═══════════════════════════════════════════════════════════════════════════


@mcp.tool()
async def list_alerts() -> list[dict]:
    """List alert subscriptions."""
    return _dump(_unwrap(await _get_api().list_alerts()))


@mcp.tool()
async def daily_notifications() -> list[dict]:
    """List today's triggered alert notifications."""
    return _dump(_unwrap(await _get_api().daily_notifications()))


@mcp.tool()
async def create_alert(symbol: str, alert_type: str, condition: str) -> dict:
    """Subscribe to an alert, e.g. symbol='AAPL', alert_type='MA Crossover',
    condition='when 20-day EMA crosses 50-day EMA'."""
    form = AlertForm(symbol=symbol.upper(), alert_type=alert_type, condition=condition)
    _unwrap(await _get_api().create_alert(form))
    return {"created": True, "symbol": form.symbol}


@mcp.tool()
async def delete_alert(alert_id: str) -> dict:
    """Delete an alert subscription by id."""
    _unwrap(await _get_api().delete_alert(alert_id))
    return {"deleted": True, "id": alert_id}


@mcp.tool()
async def toggle_alert(alert_id: str, enable: bool) -> dict:
    """Enable or disable an alert subscription."""
    _unwrap(await _get_api().toggle_alert(alert_id, enable))
    return {"id": alert_id, "active": enable}


# ═══════════════════════════════════════════════════════════════════════════
#  ENTRY POINT
# ═══════════════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import sys

    logging.basicConfig(
        level=get_config().log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Default is STDIO (for local MCP clients); --sse for remote hosting
    if "--sse" in sys.argv:
        mcp.run(transport="sse")
    else:
        mcp.run()
