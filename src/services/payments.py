"""
Payment reconciliation loop.

Every ``interval`` seconds the reconciler rebuilds recent job history from
the relays, picks the entries that still carry an unpaid invoice and asks
the payment provider for each invoice's status.

Outcomes are logged only; nothing is written back to the relays. Invoices
already seen as paid or expired are remembered for the lifetime of the
process so they are not polled again.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from core.base_service import BaseService
from core.identity import DvmIdentity
from core.lightning import PaymentProvider
from core.nip90 import FeedbackStatus
from core.relays import EventNetwork

from .history import (
    STATUS_COMPLETED,
    STATUS_PENDING_PAYMENT,
    HistoryConfig,
    JobHistory,
    JobHistoryEntry,
)

FINAL_INVOICE_STATES = ("paid", "expired")


class PaymentsConfig(BaseModel):
    """Payment reconciliation configuration."""

    enabled: bool = Field(default=True, description="Run the reconciliation loop")
    interval: float = Field(default=120.0, ge=1.0, description="Seconds between ticks")
    page_size: int = Field(default=500, ge=1, le=5000, description="History entries per tick")
    include_completed: bool = Field(
        default=True, description="Also poll invoices attached to published results"
    )
    max_consecutive_failures: int = Field(
        default=0, ge=0, description="Stop after this many failed ticks (0 = never)"
    )


class PaymentReconciler(BaseService[PaymentsConfig]):
    """Polls outstanding invoices of one identity."""

    SERVICE_NAME = "payments"
    CONFIG_CLASS = PaymentsConfig

    def __init__(
        self,
        network: EventNetwork,
        config: Optional[PaymentsConfig] = None,
        identity: Optional[DvmIdentity] = None,
        payments: Optional[PaymentProvider] = None,
        history_config: Optional[HistoryConfig] = None,
    ) -> None:
        super().__init__(network=network, config=config)
        self._config: PaymentsConfig
        if identity is None or payments is None:
            raise ValueError("PaymentReconciler needs an identity and a payment provider")
        self._identity = identity
        self._payments = payments
        self._history = JobHistory(network, identity, history_config)
        self._settled: dict[str, str] = {}

    @property
    def settled_invoices(self) -> dict[str, str]:
        """Invoices resolved so far, mapped to their final state."""
        return dict(self._settled)

    def _awaiting_payment(self, entries: list[JobHistoryEntry]) -> list[str]:
        wanted = {STATUS_PENDING_PAYMENT}
        if self._config.include_completed:
            wanted.add(STATUS_COMPLETED)

        invoices: list[str] = []
        for entry in entries:
            invoice = entry.invoice_bolt11
            if entry.status not in wanted or not invoice:
                continue
            if invoice in self._settled or invoice in invoices:
                continue
            invoices.append(invoice)
        return invoices

    def _forget_outside_window(self, entries: list[JobHistoryEntry]) -> None:
        # invoices no longer in the fetched window are never polled again
        visible = {entry.invoice_bolt11 for entry in entries if entry.invoice_bolt11}
        for invoice in [i for i in self._settled if i not in visible]:
            del self._settled[invoice]

    async def run(self) -> None:
        """Run one reconciliation tick."""
        page = await self._history.get_job_history(
            page=1,
            page_size=self._config.page_size,
            feedback_statuses=(
                FeedbackStatus.SUCCESS.value,
                FeedbackStatus.PAYMENT_REQUIRED.value,
            ),
        )
        self._forget_outside_window(page.entries)
        invoices = self._awaiting_payment(page.entries)

        counts: dict[str, int] = {}
        for invoice in invoices:
            if self._shutdown_event.is_set():
                break
            state = await self._check(invoice)
            counts[state] = counts.get(state, 0) + 1

        self._logger.info("reconciliation_completed", checked=len(invoices), **counts)

    async def _check(self, invoice: str) -> str:
        short = invoice[:24]
        try:
            status = await self._payments.check_invoice_status(invoice)
        except Exception as e:
            self._logger.warning("invoice_check_failed", invoice=short, error=str(e))
            return "failed"

        fields: dict[str, Any] = {"invoice": short, "status": status.status}
        if status.status == "paid":
            fields["amount_paid_msats"] = status.amount_paid_millisats
            self._logger.info("invoice_paid", **fields)
        elif status.status == "expired":
            self._logger.info("invoice_expired", **fields)
        elif status.status == "error":
            self._logger.warning("invoice_status_error", message=status.message, **fields)
        else:
            self._logger.debug("invoice_pending", **fields)

        if status.status in FINAL_INVOICE_STATES:
            self._settled[invoice] = status.status
        return status.status

    async def run_forever(  # type: ignore[override]
        self,
        interval: Optional[float] = None,
        max_consecutive_failures: Optional[int] = None,
    ) -> None:
        await super().run_forever(
            interval=interval if interval is not None else self._config.interval,
            max_consecutive_failures=(
                max_consecutive_failures
                if max_consecutive_failures is not None
                else self._config.max_consecutive_failures
            ),
        )
