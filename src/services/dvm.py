"""
DVM (Data Vending Machine) service.

Listens on the configured relays for NIP-90 job requests and runs each one
as an independent task:

    Received -> Decoding -> Processing -> Publishing -> Success
                     \\            \\             \\
                      +------------+-------------+--> Error

- Decoding: parse (and decrypt) the request, publish "processing" feedback
- Processing: run inference, price the job, create a Lightning invoice
- Publishing: publish the result (kind request+1000), then "success" feedback

Any failure publishes exactly one "error" feedback event and surfaces a typed
DVMError. Feedback publishing never fails a job.

Usage:
    dvm = Dvm(network=RelayNetwork(), config=DvmConfig(...))

    handle = await dvm.start()
    ...
    await dvm.stop(handle)
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from core.base_service import BaseService
from core.errors import (
    ConfigurationError,
    DVMConnectionError,
    DVMError,
    JobProcessingError,
    PaymentError,
)
from core.identity import DvmIdentity
from core.lightning import LightningConfig, LndClient, PaymentProvider
from core.nip04 import Nip04Cipher, PayloadCipher
from core.nip90 import (
    FeedbackStatus,
    JobFeedback,
    JobRequest,
    JobResult,
    decode_job_request,
    is_dvm_output_kind,
    is_job_request_kind,
)
from core.ollama import InferenceProvider, InferenceResult, OllamaClient, OllamaConfig
from core.relays import EventNetwork, RelayNetworkConfig, SeenIds, Subscription

from .history import HistoryConfig, JobHistory
from .payments import PaymentReconciler, PaymentsConfig

INVOICE_MEMO_PREFIX = "NIP-90 Job: "
CHARS_PER_TOKEN = 4


# =============================================================================
# Configuration
# =============================================================================


class DvmConfig(BaseModel):
    """DVM configuration."""

    identity: DvmIdentity = Field(default_factory=DvmIdentity)
    network: RelayNetworkConfig = Field(default_factory=RelayNetworkConfig)
    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    lightning: LightningConfig = Field(default_factory=LightningConfig)
    payments: PaymentsConfig = Field(default_factory=PaymentsConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    lookback: int = Field(
        default=300, ge=0, le=86400, description="Seconds of past requests to pick up on start"
    )


# =============================================================================
# Pricing
# =============================================================================


def estimate_tokens(prompt: str, output: str) -> int:
    """Rough token count when the provider reports no usage."""
    return math.ceil(len(prompt) / CHARS_PER_TOKEN) + math.ceil(len(output) / CHARS_PER_TOKEN)


def calculate_price_sats(tokens: int, price_per_1k_tokens: float, min_price_sats: int) -> int:
    """Price of a job in sats, never below the configured minimum."""
    return max(min_price_sats, math.ceil(tokens / 1000 * price_per_1k_tokens))


def _coerce_param(raw: str) -> Any:
    for convert in (int, float):
        try:
            return convert(raw)
        except ValueError:
            continue
    return raw


# =============================================================================
# Listener handle
# =============================================================================


class JobStage(str, Enum):
    RECEIVED = "received"
    DECODING = "decoding"
    PROCESSING = "processing"
    PUBLISHING = "publishing"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class ListenerHandle:
    """State of one listening session, returned by start() and consumed by stop()."""

    identity: DvmIdentity
    subscription: Optional[Subscription] = None
    reconciler: Optional[PaymentReconciler] = None
    reconciler_task: Optional[asyncio.Task[None]] = None
    jobs: set[asyncio.Task[None]] = field(default_factory=set)
    seen: SeenIds = field(default_factory=lambda: SeenIds(RelayNetworkConfig().dedup_window))
    stopped: bool = False

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self.jobs if not task.done())


# =============================================================================
# Service
# =============================================================================


class Dvm(BaseService[DvmConfig]):
    """NIP-90 text generation DVM."""

    SERVICE_NAME = "dvm"
    CONFIG_CLASS = DvmConfig

    def __init__(
        self,
        network: EventNetwork,
        config: Optional[DvmConfig] = None,
        inference: Optional[InferenceProvider] = None,
        payments: Optional[PaymentProvider] = None,
        cipher: Optional[PayloadCipher] = None,
    ) -> None:
        super().__init__(network=network, config=config)
        self._config: DvmConfig
        self._inference = inference or OllamaClient(self._config.ollama)
        self._payments = payments or LndClient(self._config.lightning)
        self._cipher = cipher or Nip04Cipher()

    def history(self, identity: Optional[DvmIdentity] = None) -> JobHistory:
        """History reconstructor for ``identity`` (default: configured identity)."""
        return JobHistory(self._network, identity or self._config.identity, self._config.history)

    # -------------------------------------------------------------------------
    # Listener
    # -------------------------------------------------------------------------

    async def start(self) -> ListenerHandle:
        """
        Subscribe to job requests and start payment reconciliation.

        The identity is snapshotted here; jobs of this session keep using it
        even if the configuration object is replaced.

        Raises:
            ConfigurationError: if no private key or no relays are configured
            DVMConnectionError: if the subscription cannot be opened
        """
        identity = self._config.identity
        if not identity.private_key or not identity.public_key:
            raise ConfigurationError("DVM private key not configured")
        if not identity.relays:
            raise ConfigurationError("No relays configured for DVM")

        handle = ListenerHandle(identity=identity, seen=SeenIds(self._config.network.dedup_window))
        filters = [
            {
                "kinds": list(identity.supported_job_kinds),
                "since": int(time.time()) - self._config.lookback,
            }
        ]

        def on_event(event: dict[str, Any]) -> None:
            self._on_event(handle, event)

        def on_eose(relay: str) -> None:
            self._logger.debug("relay_caught_up", relay=relay)

        try:
            handle.subscription = await self._network.subscribe(
                filters, on_event, relays=identity.relays, on_eose=on_eose
            )
        except DVMConnectionError:
            raise
        except Exception as e:
            raise DVMConnectionError("Failed to subscribe to job requests", cause=e) from e

        if self._config.payments.enabled:
            handle.reconciler = PaymentReconciler(
                self._network,
                config=self._config.payments,
                identity=identity,
                payments=self._payments,
                history_config=self._config.history,
            )
            handle.reconciler_task = asyncio.create_task(handle.reconciler.run_forever())

        self._logger.info(
            "listening_started",
            pubkey=identity.public_key,
            relays=len(identity.relays),
            kinds=",".join(str(k) for k in identity.supported_job_kinds),
            reconciliation=self._config.payments.enabled,
        )
        return handle

    async def stop(self, handle: ListenerHandle, cancel_jobs: bool = False) -> None:
        """
        Stop a listening session.

        When this returns the subscription delivers no more events and the
        reconciliation loop has exited. In-flight jobs keep running unless
        ``cancel_jobs`` is set.
        """
        if handle.stopped:
            return
        handle.stopped = True

        if handle.subscription is not None:
            await handle.subscription.close()

        if handle.reconciler is not None:
            handle.reconciler.request_shutdown()
        if handle.reconciler_task is not None:
            handle.reconciler_task.cancel()
            await asyncio.gather(handle.reconciler_task, return_exceptions=True)

        in_flight = handle.in_flight
        if cancel_jobs and handle.jobs:
            for task in handle.jobs:
                task.cancel()
            await asyncio.gather(*handle.jobs, return_exceptions=True)

        self._logger.info("listening_stopped", in_flight=in_flight, cancelled=cancel_jobs)

    def _on_event(self, handle: ListenerHandle, event: dict[str, Any]) -> None:
        """Accept or discard one incoming event. Must not block."""
        if handle.stopped:
            return

        event_id = event.get("id")
        kind = event.get("kind", 0)
        if event.get("pubkey") == handle.identity.public_key and is_dvm_output_kind(kind):
            self._logger.debug("own_event_ignored", event_id=event_id, kind=kind)
            return
        if not is_job_request_kind(kind) or kind not in handle.identity.supported_job_kinds:
            self._logger.debug("unsupported_event_ignored", event_id=event_id, kind=kind)
            return
        if not event_id or not handle.seen.add(event_id):
            return

        task = asyncio.create_task(self._run_job(event, handle.identity))
        handle.jobs.add(task)
        task.add_done_callback(handle.jobs.discard)

    async def _run_job(self, event: dict[str, Any], identity: DvmIdentity) -> None:
        job_id = str(event.get("id", ""))[:8]
        try:
            await self.process_job(event, identity)
        except DVMError as e:
            self._logger.warning("job_failed", job_id=job_id, stage=e.stage, error=str(e))
        except asyncio.CancelledError:
            self._logger.info("job_cancelled", job_id=job_id)
            raise
        except Exception as e:
            self._logger.exception("job_crashed", job_id=job_id, error=str(e))

    async def run(self) -> None:
        """Listen until shutdown is requested."""
        handle = await self.start()
        try:
            await self.wait()
        finally:
            await self.stop(handle, cancel_jobs=True)

    # -------------------------------------------------------------------------
    # Executor
    # -------------------------------------------------------------------------

    async def process_job(
        self, event: dict[str, Any], identity: Optional[DvmIdentity] = None
    ) -> JobResult:
        """
        Run one job request end to end.

        Returns:
            The published JobResult

        Raises:
            JobRequestError: the request could not be decoded or is incomplete
            JobProcessingError: inference or result encryption failed
            PaymentError: the invoice could not be created
            DVMConnectionError: the result could not be published
        """
        identity = identity or self._config.identity
        request_id = str(event.get("id", ""))
        requester = str(event.get("pubkey", ""))
        log = self._logger.bind(job_id=request_id[:8])

        stage = JobStage.RECEIVED
        log.info("job_received", kind=event.get("kind"), requester=requester[:8])

        try:
            if not identity.private_key:
                raise ConfigurationError("DVM private key not configured")

            stage = JobStage.DECODING
            request = decode_job_request(event, identity.private_key, self._cipher)
            await self.publish_feedback(
                JobFeedback(request.id, request.requester_pubkey, FeedbackStatus.PROCESSING),
                identity,
            )

            stage = JobStage.PROCESSING
            log.debug("stage_changed", stage=stage.value)
            prompt = request.text_input.value  # type: ignore[union-attr]
            inference = await self._infer(request, prompt, identity)

            tokens = (
                inference.usage.total_tokens
                if inference.usage is not None
                else estimate_tokens(prompt, inference.content)
            )
            pricing = identity.text_generation
            price_sats = calculate_price_sats(
                tokens, pricing.price_per_1k_tokens, pricing.min_price_sats
            )

            try:
                invoice = await self._payments.create_invoice(
                    price_sats, f"{INVOICE_MEMO_PREFIX}{request.id[:8]}"
                )
            except Exception as e:
                raise PaymentError("Failed to create invoice", cause=e) from e
            log.info("invoice_created", amount_sats=price_sats, tokens=tokens)

            content = inference.content
            if request.encrypted:
                try:
                    content = self._cipher.encrypt(
                        identity.private_key, request.requester_pubkey, content
                    )
                except Exception as e:
                    raise JobProcessingError("Failed to encrypt job result", cause=e) from e

            stage = JobStage.PUBLISHING
            log.debug("stage_changed", stage=stage.value)
            result = JobResult(
                request_id=request.id,
                requester_pubkey=request.requester_pubkey,
                kind=request.result_kind,
                content=content,
                amount_millisats=price_sats * 1000,
                invoice=invoice.encoded_invoice,
                encrypted=request.encrypted,
                input_tags=request.input_tags,
            )
            try:
                await self._network.publish(
                    result.to_event(identity.private_key), relays=identity.relays
                )
            except Exception as e:
                raise DVMConnectionError("Failed to publish job result", cause=e) from e

            await self.publish_feedback(
                JobFeedback(
                    request.id,
                    request.requester_pubkey,
                    FeedbackStatus.SUCCESS,
                    amount_millisats=result.amount_millisats,
                    invoice=result.invoice,
                ),
                identity,
            )

            stage = JobStage.SUCCESS
            log.info("job_completed", result_kind=result.kind, amount_sats=price_sats)
            return result

        except Exception as e:
            error = self._classify(e)
            log.error(
                "job_error",
                stage=stage.value,
                error_type=type(error).__name__,
                error=str(error),
            )
            await self.publish_feedback(
                JobFeedback(request_id, requester, FeedbackStatus.ERROR, message=error.message),
                identity,
            )
            if error is e:
                raise
            raise error from e

    async def _infer(
        self, request: JobRequest, prompt: str, identity: DvmIdentity
    ) -> InferenceResult:
        defaults = identity.text_generation
        options = defaults.generation_defaults()
        for name, raw in request.params.items():
            if name in options:
                options[name] = _coerce_param(raw)
        model = request.params.get("model") or defaults.model

        try:
            return await self._inference.complete(
                model, [{"role": "user", "content": prompt}], **options
            )
        except Exception as e:
            raise JobProcessingError("Inference failed", cause=e) from e

    @staticmethod
    def _classify(error: Exception) -> DVMError:
        if isinstance(error, DVMError):
            return error
        return JobProcessingError("Unknown error during job processing", cause=error)

    # -------------------------------------------------------------------------
    # Feedback
    # -------------------------------------------------------------------------

    async def publish_feedback(
        self, feedback: JobFeedback, identity: Optional[DvmIdentity] = None
    ) -> None:
        """Publish a kind 7000 feedback event. Never raises."""
        identity = identity or self._config.identity
        try:
            if not identity.private_key:
                raise ConfigurationError("DVM private key not configured")
            await self._network.publish(
                feedback.to_event(identity.private_key), relays=identity.relays
            )
            self._logger.debug(
                "feedback_published",
                job_id=feedback.request_id[:8],
                status=feedback.status.value,
            )
        except Exception as e:
            self._logger.warning(
                "feedback_publish_failed",
                job_id=feedback.request_id[:8],
                status=feedback.status.value,
                error=str(e),
            )
