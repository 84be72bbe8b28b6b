"""
Payment provider backed by the LND REST API.

Endpoints used:
    POST /v1/invoices            add an invoice
    GET  /v1/payreq/{bolt11}     decode a payment request (payment hash)
    GET  /v1/invoice/{r_hash}    look up an invoice by hex payment hash

Authentication is the hex encoded macaroon in ``Grpc-Metadata-macaroon``.
"""

from __future__ import annotations

import base64
import os
import time
from dataclasses import dataclass
from typing import Any, Literal, Optional, Protocol

import aiohttp
from pydantic import BaseModel, Field, field_validator

from .logger import Logger

MACAROON_ENV = "LND_MACAROON"

InvoiceState = Literal["pending", "paid", "expired", "error"]


class LightningError(Exception):
    """Raised when the Lightning node rejects or fails a request."""


@dataclass(frozen=True)
class Invoice:
    encoded_invoice: str
    payment_hash: str
    amount_sats: int
    memo: str
    expires_at: int


@dataclass(frozen=True)
class InvoiceStatus:
    status: InvoiceState
    amount_paid_millisats: Optional[int] = None
    message: Optional[str] = None


class PaymentProvider(Protocol):
    async def create_invoice(self, amount_sats: int, memo: str) -> Invoice: ...

    async def check_invoice_status(self, encoded_invoice: str) -> InvoiceStatus: ...


def _get_macaroon_from_env() -> Optional[str]:
    return os.getenv(MACAROON_ENV) or None


class LightningConfig(BaseModel):
    """LND REST connection settings."""

    rest_url: str = Field(default="https://localhost:8080", description="LND REST base URL")
    macaroon: Optional[str] = Field(
        default_factory=_get_macaroon_from_env,
        description="Invoice macaroon hex (from LND_MACAROON env)",
        repr=False,
    )
    tls_verify: bool = Field(default=True, description="Verify the node's TLS certificate")
    invoice_expiry: int = Field(default=3600, ge=60, le=86400, description="Invoice expiry")
    timeout: float = Field(default=30.0, ge=1.0, le=300.0, description="Request timeout")

    @field_validator("macaroon", mode="before")
    @classmethod
    def load_macaroon_from_env(cls, v: Optional[str]) -> Optional[str]:
        if not v:
            return _get_macaroon_from_env()
        return v


class LndClient:
    """PaymentProvider talking to an LND node over REST."""

    def __init__(self, config: Optional[LightningConfig] = None) -> None:
        self._config = config or LightningConfig()
        self._logger = Logger("lightning")

    @property
    def config(self) -> LightningConfig:
        return self._config

    def _headers(self) -> dict[str, str]:
        if not self._config.macaroon:
            return {}
        return {"Grpc-Metadata-macaroon": self._config.macaroon}

    async def _request(
        self, method: str, path: str, payload: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        url = f"{self._config.rest_url.rstrip('/')}{path}"
        timeout = aiohttp.ClientTimeout(total=self._config.timeout)
        ssl = self._config.tls_verify

        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as session:
                async with session.request(method, url, json=payload, ssl=ssl) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise LightningError(f"{method} {path} returned {resp.status}: {body}")
                    data = await resp.json()
        except aiohttp.ClientError as e:
            raise LightningError(f"{method} {path} failed: {e}") from e

        if not isinstance(data, dict):
            raise LightningError(f"{method} {path} returned an unexpected body")
        return data

    async def create_invoice(self, amount_sats: int, memo: str) -> Invoice:
        """
        Add an invoice on the node.

        Raises:
            LightningError: if the node refuses or returns no payment request
        """
        expiry = self._config.invoice_expiry
        data = await self._request(
            "POST", "/v1/invoices", {"value": str(amount_sats), "memo": memo, "expiry": str(expiry)}
        )

        payment_request = data.get("payment_request")
        r_hash = data.get("r_hash")
        if not payment_request or not r_hash:
            raise LightningError("node returned no payment request")

        invoice = Invoice(
            encoded_invoice=payment_request,
            payment_hash=base64.b64decode(r_hash).hex(),
            amount_sats=amount_sats,
            memo=memo,
            expires_at=int(time.time()) + expiry,
        )
        self._logger.debug("invoice_created", amount_sats=amount_sats, hash=invoice.payment_hash)
        return invoice

    async def check_invoice_status(self, encoded_invoice: str) -> InvoiceStatus:
        """
        Look up an invoice by its encoded payment request.

        Node errors are reported as an ``error`` status rather than raised.
        """
        try:
            decoded = await self._request("GET", f"/v1/payreq/{encoded_invoice}")
            payment_hash = decoded.get("payment_hash")
            if not payment_hash:
                return InvoiceStatus(status="error", message="payment hash not found")
            invoice = await self._request("GET", f"/v1/invoice/{payment_hash}")
        except LightningError as e:
            return InvoiceStatus(status="error", message=str(e))

        return self._status_from_invoice(invoice)

    @staticmethod
    def _status_from_invoice(invoice: dict[str, Any]) -> InvoiceStatus:
        state = invoice.get("state")
        if state == "SETTLED":
            return InvoiceStatus(
                status="paid", amount_paid_millisats=int(invoice.get("amt_paid_msat") or 0)
            )
        if state == "CANCELED":
            return InvoiceStatus(status="expired")
        if state == "OPEN":
            expires_at = int(invoice.get("creation_date") or 0) + int(invoice.get("expiry") or 0)
            if expires_at and time.time() > expires_at:
                return InvoiceStatus(status="expired")
            return InvoiceStatus(status="pending")
        if state == "ACCEPTED":
            return InvoiceStatus(status="pending")
        return InvoiceStatus(status="error", message=f"unknown invoice state: {state}")
