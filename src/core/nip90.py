"""
NIP-90 Data Vending Machine wire shapes.

Kinds:
    5000-5999  job requests
    6000-6999  job results (request kind + 1000)
    7000       job feedback

Request tags:  i[value, type, relay?, marker?]*  param[name, value]*
               output[mime]?  bid[millisats]?  encrypted[]?
Result tags:   e[request id]  p[requester]  amount[millisats, bolt11]  encrypted[]?
Feedback tags: e[request id]  p[requester]  status[value, extra?]  amount[millisats, bolt11]?

When a request carries the ``encrypted`` marker its ``i``/``param``/
``output``/``bid`` tags live, JSON-encoded, in the NIP-04 encrypted content.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .errors import JobRequestError
from .events import Tag, build_event, has_tag
from .nip04 import PayloadCipher

JOB_REQUEST_KIND_MIN = 5000
JOB_REQUEST_KIND_MAX = 5999
JOB_RESULT_KIND_MIN = 6000
JOB_RESULT_KIND_MAX = 6999
JOB_FEEDBACK_KIND = 7000

DEFAULT_OUTPUT_MIME = "text/plain"
STATUS_EXTRA_MAX_LENGTH = 256


class FeedbackStatus(str, Enum):
    """
    NIP-90 feedback status values.

    The executor emits processing, success, error and payment-required.
    PARTIAL exists so feedback built by other DVMs encodes and reads back
    with the same tag and content layout; this service never sends it.
    """

    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"
    PAYMENT_REQUIRED = "payment-required"
    PARTIAL = "partial"


def is_job_request_kind(kind: int) -> bool:
    return JOB_REQUEST_KIND_MIN <= kind <= JOB_REQUEST_KIND_MAX


def is_job_result_kind(kind: int) -> bool:
    return JOB_RESULT_KIND_MIN <= kind <= JOB_RESULT_KIND_MAX


def is_dvm_output_kind(kind: int) -> bool:
    """True for kinds a DVM publishes (results and feedback)."""
    return kind == JOB_FEEDBACK_KIND or is_job_result_kind(kind)


# =============================================================================
# Models
# =============================================================================


@dataclass(frozen=True)
class JobInput:
    value: str
    type: str
    relay: Optional[str] = None
    marker: Optional[str] = None


@dataclass(frozen=True)
class JobRequest:
    """A decoded and validated job request."""

    id: str
    requester_pubkey: str
    kind: int
    inputs: tuple[JobInput, ...]
    params: dict[str, str] = field(default_factory=dict)
    output_mime: str = DEFAULT_OUTPUT_MIME
    bid_millisats: Optional[int] = None
    encrypted: bool = False
    input_tags: tuple[tuple[str, ...], ...] = ()

    @property
    def text_input(self) -> Optional[JobInput]:
        for job_input in self.inputs:
            if job_input.type == "text" and job_input.value:
                return job_input
        return None

    @property
    def result_kind(self) -> int:
        return self.kind + 1000


@dataclass(frozen=True)
class JobResult:
    request_id: str
    requester_pubkey: str
    kind: int
    content: str
    amount_millisats: int
    invoice: str
    encrypted: bool = False
    input_tags: tuple[tuple[str, ...], ...] = ()

    def to_tags(self) -> list[Tag]:
        tags: list[Tag] = [
            ["e", self.request_id],
            ["p", self.requester_pubkey],
            ["amount", str(self.amount_millisats), self.invoice],
        ]
        if self.encrypted:
            tags.append(["encrypted"])
        tags.extend(list(tag) for tag in self.input_tags)
        return tags

    def to_event(self, private_key_hex: str) -> dict[str, Any]:
        return build_event(private_key_hex, self.kind, self.to_tags(), self.content)


@dataclass(frozen=True)
class JobFeedback:
    request_id: str
    requester_pubkey: str
    status: FeedbackStatus
    message: Optional[str] = None
    amount_millisats: Optional[int] = None
    invoice: Optional[str] = None

    def to_tags(self) -> list[Tag]:
        status_tag = ["status", self.status.value]
        if self.message and self.status in (
            FeedbackStatus.ERROR,
            FeedbackStatus.PROCESSING,
            FeedbackStatus.PAYMENT_REQUIRED,
        ):
            status_tag.append(self.message[:STATUS_EXTRA_MAX_LENGTH])

        tags: list[Tag] = [["e", self.request_id], ["p", self.requester_pubkey], status_tag]
        if self.amount_millisats is not None:
            amount_tag = ["amount", str(self.amount_millisats)]
            if self.invoice:
                amount_tag.append(self.invoice)
            tags.append(amount_tag)
        return tags

    def content(self) -> str:
        # Partial results and error messages too long for the status tag
        # travel in the content.
        if self.status == FeedbackStatus.PARTIAL:
            return self.message or ""
        if self.status == FeedbackStatus.ERROR and self.message:
            if len(self.message) > STATUS_EXTRA_MAX_LENGTH:
                return self.message
        return ""

    def to_event(self, private_key_hex: str) -> dict[str, Any]:
        return build_event(private_key_hex, JOB_FEEDBACK_KIND, self.to_tags(), self.content())


# =============================================================================
# Decoder
# =============================================================================


def _request_tags(
    event: dict[str, Any], private_key_hex: Optional[str], cipher: Optional[PayloadCipher]
) -> list[Any]:
    if not has_tag(event, "encrypted"):
        return list(event.get("tags", []))

    if not private_key_hex or cipher is None:
        raise JobRequestError("Encrypted request but no decryption key configured")

    try:
        plaintext = cipher.decrypt(private_key_hex, event["pubkey"], event.get("content", ""))
    except Exception as e:
        raise JobRequestError("Failed to decrypt NIP-90 request content", cause=e) from e

    try:
        tags = json.loads(plaintext)
    except json.JSONDecodeError as e:
        raise JobRequestError("Failed to parse decrypted JSON tags", cause=e) from e
    if not isinstance(tags, list):
        raise JobRequestError("Decrypted request content is not a tag array")
    return tags


def decode_job_request(
    event: dict[str, Any],
    private_key_hex: Optional[str] = None,
    cipher: Optional[PayloadCipher] = None,
) -> JobRequest:
    """
    Turn a raw kind 5xxx event into a validated JobRequest.

    Args:
        event: Raw request event
        private_key_hex: DVM private key, needed for encrypted requests
        cipher: Payload cipher, needed for encrypted requests

    Raises:
        JobRequestError: undecryptable, malformed or incomplete request
    """
    kind = event.get("kind")
    if not isinstance(kind, int) or not is_job_request_kind(kind):
        raise JobRequestError(f"Unsupported job request kind: {kind}")

    encrypted = has_tag(event, "encrypted")
    tags = _request_tags(event, private_key_hex, cipher)

    inputs: list[JobInput] = []
    input_tags: list[tuple[str, ...]] = []
    params: dict[str, str] = {}
    output_mime = DEFAULT_OUTPUT_MIME
    bid_millisats: Optional[int] = None

    for tag in tags:
        if not isinstance(tag, list) or not tag:
            continue
        tag = [str(item) for item in tag]
        name = tag[0]

        if name == "i" and len(tag) >= 3:
            inputs.append(
                JobInput(
                    value=tag[1],
                    type=tag[2],
                    relay=tag[3] if len(tag) > 3 else None,
                    marker=tag[4] if len(tag) > 4 else None,
                )
            )
            if not encrypted:
                input_tags.append(tuple(tag))
        elif name == "param" and len(tag) >= 3:
            params[tag[1]] = tag[2]
        elif name == "output" and len(tag) >= 2 and tag[1]:
            output_mime = tag[1]
        elif name == "bid" and len(tag) >= 2:
            try:
                bid_millisats = int(tag[1]) or None
            except ValueError:
                bid_millisats = None

    if not inputs:
        raise JobRequestError("No inputs provided")
    if not any(job_input.type == "text" and job_input.value for job_input in inputs):
        raise JobRequestError("No text input found")

    return JobRequest(
        id=event["id"],
        requester_pubkey=event["pubkey"],
        kind=kind,
        inputs=tuple(inputs),
        params=params,
        output_mime=output_mime,
        bid_millisats=bid_millisats,
        encrypted=encrypted,
        input_tags=tuple(input_tags),
    )
