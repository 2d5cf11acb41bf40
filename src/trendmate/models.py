"""Pydantic models for queries, request outcomes, report content and workflow state."""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Query identity
# ---------------------------------------------------------------------------

class LogicalQuery(BaseModel):
    """Operation tag plus ordered arguments; the cache and identity key."""
    model_config = ConfigDict(frozen=True)

    tag: str
    args: tuple[str, ...] = ()

    @classmethod
    def of(cls, tag: str, *args: str) -> LogicalQuery:
        return cls(tag=tag, args=tuple(args))

    def __str__(self) -> str:
        return f"{self.tag}({', '.join(self.args)})"


# ---------------------------------------------------------------------------
# Request outcomes
# ---------------------------------------------------------------------------

class FailureReason(str, Enum):
    TIMEOUT = "timeout"
    OVERLOADED = "overloaded"
    HTTP_ERROR = "http_error"
    DECODE_ERROR = "decode_error"
    CANCELLED = "cancelled"
    MALFORMED_CONTENT_ITEM = "malformed_content_item"


class UserFacingError(str, Enum):
    """The only failure detail that crosses into the presentation layer."""
    SERVER_OVERLOADED = "server_overloaded"
    TIMED_OUT = "timed_out"
    REQUEST_FAILED = "request_failed"
    CANCELLED = "cancelled"


_USER_ERRORS: dict[FailureReason, UserFacingError] = {
    FailureReason.OVERLOADED: UserFacingError.SERVER_OVERLOADED,
    FailureReason.TIMEOUT: UserFacingError.TIMED_OUT,
    FailureReason.CANCELLED: UserFacingError.CANCELLED,
}


class Success(BaseModel):
    kind: Literal["success"] = "success"
    payload: Any = None


class RetryableFailure(BaseModel):
    kind: Literal["retryable"] = "retryable"
    reason: FailureReason
    status: int | None = None
    detail: str = ""


class FatalFailure(BaseModel):
    kind: Literal["fatal"] = "fatal"
    reason: FailureReason
    status: int | None = None
    detail: str = ""

    @property
    def user_error(self) -> UserFacingError:
        return _USER_ERRORS.get(self.reason, UserFacingError.REQUEST_FAILED)

    @property
    def cancelled(self) -> bool:
        return self.reason is FailureReason.CANCELLED


RequestOutcome = Annotated[
    Union[Success, RetryableFailure, FatalFailure],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Report content
# ---------------------------------------------------------------------------

class TextBlock(BaseModel):
    """Prose, possibly carrying inline HTML and Markdown emphasis."""
    kind: Literal["text"] = "text"
    raw_text: str = ""

    @property
    def plain_text(self) -> str:
        from trendmate.normalizer import strip_html
        return strip_html(self.raw_text)


class ChartSeries(BaseModel):
    name: str = ""
    values: list[float | None]
    style: dict[str, Any] = {}


class ChartBlock(BaseModel):
    kind: Literal["chart"] = "chart"
    chart_kind: str = "line"
    labels: list[str] = []
    series: list[ChartSeries]
    axis_config: dict[str, Any] = {}
    label: str = ""


class TableBlock(BaseModel):
    """Rectangular table; ``html`` is kept when the source was an HTML table."""
    kind: Literal["table"] = "table"
    rows: list[dict[str, str]] = []
    html: str | None = None

    @property
    def columns(self) -> list[str]:
        return list(self.rows[0]) if self.rows else []


ContentBlock = Annotated[
    Union[TextBlock, ChartBlock, TableBlock],
    Field(discriminator="kind"),
]


class MetricSnapshot(BaseModel):
    """OHLCV summary scraped from report prose."""
    open: float
    high: float
    low: float
    close: float
    volume: int | None = None


class Report(BaseModel):
    label: str | None = None
    blocks: list[ContentBlock] = []
    metrics: MetricSnapshot | None = None
    skipped: int = 0                 # malformed items dropped during normalization


# ---------------------------------------------------------------------------
# Company search & alerts
# ---------------------------------------------------------------------------

class CompanyOption(BaseModel):
    label: str
    value: str
    subtitle: str | None = None


class Alert(BaseModel):
    id: str
    symbol: str = ""
    alert_type: str = ""
    condition: str = ""
    active: bool = True
    message: str | None = None
    timestamp: str | None = None


class AlertForm(BaseModel):
    symbol: str
    alert_type: str
    condition: str


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class CacheEntry(BaseModel):
    query: LogicalQuery
    outcome: RequestOutcome
    written_at: float = Field(default_factory=time.time)

    def is_stale(self, ttl: float | None, now: float) -> bool:
        if ttl is None:
            return False
        return (now - self.written_at) > ttl


# ---------------------------------------------------------------------------
# Workflow state
# ---------------------------------------------------------------------------

class Slot(str, Enum):
    FIRST = "first"
    SECOND = "second"


class Idle(BaseModel):
    kind: Literal["idle"] = "idle"


class SearchInFlight(BaseModel):
    kind: Literal["search_in_flight"] = "search_in_flight"
    term: str
    slot: Slot = Slot.FIRST


class AwaitingSelection(BaseModel):
    kind: Literal["awaiting_selection"] = "awaiting_selection"
    options: list[CompanyOption]
    slot: Slot = Slot.FIRST


class AwaitingSecondSelection(BaseModel):
    kind: Literal["awaiting_second_selection"] = "awaiting_second_selection"
    first: str                       # the symbol already picked
    missing: Slot = Slot.SECOND


class SelectInFlight(BaseModel):
    kind: Literal["select_in_flight"] = "select_in_flight"
    choices: tuple[str, ...]


class Resolved(BaseModel):
    kind: Literal["resolved"] = "resolved"
    report: Report
    choices: tuple[str, ...] = ()


class Failed(BaseModel):
    kind: Literal["failed"] = "failed"
    reason: UserFacingError
    detail: str = ""


WorkflowState = Annotated[
    Union[
        Idle,
        SearchInFlight,
        AwaitingSelection,
        AwaitingSecondSelection,
        SelectInFlight,
        Resolved,
        Failed,
    ],
    Field(discriminator="kind"),
]
