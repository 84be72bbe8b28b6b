"""
Job history and statistics, rebuilt from the DVM's own published events.

There is no job database: every query fetches the identity's result events
(kind request+1000) and kind 7000 feedback events from the relays and
derives the answer from them.

Usage:
    history = JobHistory(network, identity)

    page = await history.get_job_history(page=2, page_size=10)
    for entry in page.entries:
        print(entry.job_request_event_id, entry.status)

    stats = await history.get_job_statistics()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from core.events import find_tag, has_tag, tag_value
from core.identity import DvmIdentity
from core.logger import Logger
from core.nip90 import JOB_FEEDBACK_KIND, FeedbackStatus, is_job_result_kind
from core.relays import EventNetwork, sort_newest_first

ENCRYPTED_RESULT_MARKER = "[Encrypted Result Content]"
NO_SUMMARY = "N/A"
INPUT_SUMMARY_LENGTH = 50
RESULT_SUMMARY_LENGTH = 100

STATUS_COMPLETED = "completed"
STATUS_PENDING_PAYMENT = "pending_payment"


class HistoryConfig(BaseModel):
    """History reconstruction configuration."""

    stats_window: int = Field(
        default=500, ge=1, le=5000, description="Events fetched per kind for statistics"
    )


@dataclass(frozen=True)
class JobHistoryEntry:
    id: str
    timestamp: int
    job_request_event_id: Optional[str]
    requester_pubkey: Optional[str]
    status: str
    kind: int
    input_summary: str
    invoice_amount_sats: Optional[int] = None
    invoice_bolt11: Optional[str] = None
    result_summary: Optional[str] = None


@dataclass(frozen=True)
class JobHistoryPage:
    entries: list[JobHistoryEntry] = field(default_factory=list)
    total_count: int = 0


@dataclass(frozen=True)
class JobStatistics:
    total_jobs_processed: int = 0
    total_successful_jobs: int = 0
    total_failed_jobs: int = 0
    total_revenue_sats: int = 0
    jobs_pending_payment: int = 0


def _truncate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length] + "..."


def _amount_sats(event: dict[str, Any]) -> Optional[int]:
    raw = tag_value(event, "amount")
    if raw is None:
        return None
    try:
        return int(raw) // 1000
    except ValueError:
        return None


def _entry_status(event: dict[str, Any]) -> str:
    if is_job_result_kind(event.get("kind", 0)):
        return STATUS_COMPLETED
    status = tag_value(event, "status") or "unknown"
    if status == FeedbackStatus.PAYMENT_REQUIRED.value:
        return STATUS_PENDING_PAYMENT
    return status


def _input_summary(event: dict[str, Any]) -> str:
    value = tag_value(event, "i")
    return _truncate(value, INPUT_SUMMARY_LENGTH) if value else NO_SUMMARY


def _result_summary(event: dict[str, Any]) -> Optional[str]:
    if has_tag(event, "encrypted"):
        return ENCRYPTED_RESULT_MARKER
    content = event.get("content") or ""
    return _truncate(content, RESULT_SUMMARY_LENGTH) if content else None


def to_history_entry(event: dict[str, Any]) -> JobHistoryEntry:
    """Map a result or feedback event onto a history entry."""
    kind = event.get("kind", 0)
    amount_tag = find_tag(event, "amount")
    return JobHistoryEntry(
        id=event["id"],
        timestamp=event.get("created_at", 0) * 1000,
        job_request_event_id=tag_value(event, "e"),
        requester_pubkey=tag_value(event, "p"),
        status=_entry_status(event),
        kind=kind - 1000 if is_job_result_kind(kind) else kind,
        input_summary=_input_summary(event),
        invoice_amount_sats=_amount_sats(event),
        invoice_bolt11=amount_tag[2] if amount_tag and len(amount_tag) > 2 else None,
        result_summary=_result_summary(event),
    )


class JobHistory:
    """Reconstructs job history and statistics for one DVM identity."""

    def __init__(
        self,
        network: EventNetwork,
        identity: DvmIdentity,
        config: Optional[HistoryConfig] = None,
    ) -> None:
        self._network = network
        self._identity = identity
        self._config = config or HistoryConfig()
        self._logger = Logger("history")

    @property
    def config(self) -> HistoryConfig:
        return self._config

    def _filters(self, limit: int, feedback_statuses: Optional[Iterable[str]]) -> list[dict]:
        author = [self._identity.public_key]
        feedback: dict[str, Any] = {"kinds": [JOB_FEEDBACK_KIND], "authors": author, "limit": limit}
        if feedback_statuses is not None:
            feedback["#status"] = list(feedback_statuses)
        return [
            {"kinds": self._identity.result_kinds, "authors": author, "limit": limit},
            feedback,
        ]

    async def get_job_history(
        self,
        page: int = 1,
        page_size: int = 20,
        feedback_statuses: Iterable[str] = (FeedbackStatus.SUCCESS.value,),
    ) -> JobHistoryPage:
        """
        Return one page of job history, newest first.

        ``total_count`` is the number of events fetched for pages 1..page,
        not the exact number of jobs ever processed.

        Raises:
            ValueError: if page or page_size is below 1
            DVMConnectionError: if no relay could be queried
        """
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be >= 1")
        if not self._identity.public_key:
            return JobHistoryPage()

        events = await self._network.list(
            self._filters(page * page_size, tuple(feedback_statuses)),
            relays=self._identity.relays,
        )
        merged = sort_newest_first({e["id"]: e for e in events if e.get("id")}.values())

        start = (page - 1) * page_size
        entries = [to_history_entry(e) for e in merged[start : start + page_size]]

        self._logger.debug(
            "job_history_built", page=page, page_size=page_size, entries=len(entries)
        )
        return JobHistoryPage(entries=entries, total_count=len(merged))

    async def get_job_statistics(self) -> JobStatistics:
        """
        Aggregate counters over a bounded window of recent events.

        Raises:
            DVMConnectionError: if no relay could be queried
        """
        if not self._identity.public_key:
            return JobStatistics()

        events = await self._network.list(
            self._filters(self._config.stats_window, None), relays=self._identity.relays
        )

        request_ids: set[str] = set()
        successful = failed = pending = revenue = 0
        seen: set[str] = set()

        for event in events:
            if not event.get("id") or event["id"] in seen:
                continue
            seen.add(event["id"])

            request_id = tag_value(event, "e")
            if request_id:
                request_ids.add(request_id)

            kind = event.get("kind", 0)
            status = tag_value(event, "status")
            if is_job_result_kind(kind) or (
                kind == JOB_FEEDBACK_KIND and status == FeedbackStatus.SUCCESS.value
            ):
                successful += 1
                revenue += _amount_sats(event) or 0
            elif kind == JOB_FEEDBACK_KIND and status == FeedbackStatus.ERROR.value:
                failed += 1
            elif kind == JOB_FEEDBACK_KIND and status == FeedbackStatus.PAYMENT_REQUIRED.value:
                pending += 1

        return JobStatistics(
            total_jobs_processed=len(request_ids),
            total_successful_jobs=successful,
            total_failed_jobs=failed,
            total_revenue_sats=revenue,
            jobs_pending_payment=pending,
        )
