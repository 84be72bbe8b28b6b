"""
Unit tests for services.dvm module.

Tests:
- Pricing helpers
- Job execution: success path, validation errors, provider failures
- Feedback publishing isolation
- Listener: self-loop guard, dedup, start/stop lifecycle
"""

import asyncio
import json
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.errors import (
    ConfigurationError,
    DVMConnectionError,
    JobProcessingError,
    JobRequestError,
    PaymentError,
)
from core.events import build_event, find_tag, tag_value
from core.identity import DvmIdentity
from core.nip04 import Nip04Cipher
from core.nip90 import JOB_FEEDBACK_KIND, FeedbackStatus, JobFeedback
from core.ollama import InferenceResult
from services.dvm import Dvm, DvmConfig, calculate_price_sats, estimate_tokens


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def dvm_config(identity: DvmIdentity) -> DvmConfig:
    return DvmConfig(identity=identity, payments={"enabled": False})


@pytest.fixture
def dvm(
    mock_network: MagicMock,
    dvm_config: DvmConfig,
    mock_inference: MagicMock,
    mock_payments: MagicMock,
) -> Dvm:
    return Dvm(
        network=mock_network,
        config=dvm_config,
        inference=mock_inference,
        payments=mock_payments,
    )


def published_feedback(network: MagicMock) -> list[dict[str, Any]]:
    return [e for e in network.published if e["kind"] == JOB_FEEDBACK_KIND]


def published_results(network: MagicMock) -> list[dict[str, Any]]:
    return [e for e in network.published if 6000 <= e["kind"] <= 6999]


def statuses(network: MagicMock) -> list[str]:
    return [tag_value(e, "status") for e in published_feedback(network)]


# ============================================================================
# Pricing
# ============================================================================


class TestPricing:
    """Tests for price calculation."""

    def test_price_from_tokens(self) -> None:
        assert calculate_price_sats(2500, 10, 5) == 25

    def test_minimum_price(self) -> None:
        assert calculate_price_sats(10, 2.0, 10) == 10

    def test_rounds_up(self) -> None:
        assert calculate_price_sats(1001, 1.0, 0) == 2

    def test_estimate_tokens(self) -> None:
        assert estimate_tokens("abcde", "abcd") == 3
        assert estimate_tokens("", "") == 0


# ============================================================================
# Executor
# ============================================================================


class TestProcessJob:
    """Tests for Dvm.process_job."""

    @pytest.mark.asyncio
    async def test_success(
        self,
        dvm: Dvm,
        mock_network: MagicMock,
        mock_inference: MagicMock,
        mock_payments: MagicMock,
        identity: DvmIdentity,
        sample_request: dict[str, Any],
    ) -> None:
        result = await dvm.process_job(sample_request, identity)

        results = published_results(mock_network)
        assert len(results) == 1
        assert statuses(mock_network) == ["processing", "success"]

        event = results[0]
        assert event["kind"] == 6050
        assert event["pubkey"] == identity.public_key
        assert event["content"] == "Bonjour le monde"
        assert tag_value(event, "e") == sample_request["id"]
        assert tag_value(event, "p") == sample_request["pubkey"]
        assert find_tag(event, "amount") == ["amount", "25000", "lnbc250n1ptestinvoice"]
        assert find_tag(event, "i") == ["i", "Translate to French: Hello world", "text"]

        success = published_feedback(mock_network)[-1]
        assert tag_value(success, "e") == sample_request["id"]
        assert find_tag(success, "amount") == ["amount", "25000", "lnbc250n1ptestinvoice"]

        assert result.amount_millisats == 25000
        mock_payments.create_invoice.assert_awaited_once_with(
            25, f"NIP-90 Job: {sample_request['id'][:8]}"
        )

    @pytest.mark.asyncio
    async def test_processing_feedback_before_inference(
        self,
        dvm: Dvm,
        mock_network: MagicMock,
        mock_inference: MagicMock,
        identity: DvmIdentity,
        sample_request: dict[str, Any],
    ) -> None:
        async def complete(*args: Any, **kwargs: Any) -> InferenceResult:
            assert statuses(mock_network) == ["processing"]
            return InferenceResult(content="ok", model="m")

        mock_inference.complete.side_effect = complete
        await dvm.process_job(sample_request, identity)

    @pytest.mark.asyncio
    async def test_params_override_defaults(
        self,
        dvm: Dvm,
        mock_inference: MagicMock,
        identity: DvmIdentity,
        make_request: Callable[..., dict[str, Any]],
    ) -> None:
        event = make_request(
            tags=[
                ["i", "Hi", "text"],
                ["param", "model", "llama3"],
                ["param", "temperature", "0.1"],
                ["param", "max_tokens", "64"],
                ["param", "unknown", "x"],
            ]
        )
        await dvm.process_job(event, identity)

        args, kwargs = mock_inference.complete.call_args
        assert args == ("llama3", [{"role": "user", "content": "Hi"}])
        assert kwargs == {
            "max_tokens": 64,
            "temperature": 0.1,
            "top_k": 40,
            "top_p": 0.9,
            "frequency_penalty": 0.5,
        }

    @pytest.mark.asyncio
    async def test_estimated_tokens_without_usage(
        self,
        dvm: Dvm,
        mock_inference: MagicMock,
        mock_payments: MagicMock,
        identity: DvmIdentity,
        make_request: Callable[..., dict[str, Any]],
    ) -> None:
        mock_inference.complete.return_value = InferenceResult(content="x" * 4000, model="m")
        event = make_request(tags=[["i", "y" * 4000, "text"]])

        await dvm.process_job(event, identity)

        # 2000 estimated tokens at 10 sats per 1k
        assert mock_payments.create_invoice.call_args[0][0] == 20

    @pytest.mark.asyncio
    async def test_no_inputs(
        self,
        dvm: Dvm,
        mock_network: MagicMock,
        mock_inference: MagicMock,
        identity: DvmIdentity,
        make_request: Callable[..., dict[str, Any]],
    ) -> None:
        with pytest.raises(JobRequestError, match="No inputs provided"):
            await dvm.process_job(make_request(tags=[]), identity)

        assert statuses(mock_network) == ["error"]
        assert published_results(mock_network) == []
        error = published_feedback(mock_network)[0]
        assert find_tag(error, "status") == ["status", "error", "No inputs provided"]
        mock_inference.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inference_failure(
        self,
        dvm: Dvm,
        mock_network: MagicMock,
        mock_inference: MagicMock,
        mock_payments: MagicMock,
        identity: DvmIdentity,
        sample_request: dict[str, Any],
    ) -> None:
        mock_inference.complete.side_effect = RuntimeError("model not loaded")

        with pytest.raises(JobProcessingError):
            await dvm.process_job(sample_request, identity)

        assert statuses(mock_network) == ["processing", "error"]
        assert published_results(mock_network) == []
        mock_payments.create_invoice.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invoice_failure(
        self,
        dvm: Dvm,
        mock_network: MagicMock,
        mock_payments: MagicMock,
        identity: DvmIdentity,
        sample_request: dict[str, Any],
    ) -> None:
        mock_payments.create_invoice.side_effect = RuntimeError("node offline")

        with pytest.raises(PaymentError):
            await dvm.process_job(sample_request, identity)

        assert statuses(mock_network) == ["processing", "error"]
        assert published_results(mock_network) == []

    @pytest.mark.asyncio
    async def test_result_publish_failure(
        self,
        dvm: Dvm,
        mock_network: MagicMock,
        identity: DvmIdentity,
        sample_request: dict[str, Any],
    ) -> None:
        async def publish(event: dict[str, Any], relays: Any = None) -> None:
            if event["kind"] != JOB_FEEDBACK_KIND:
                raise DVMConnectionError("Failed to publish event to any relay")
            mock_network.published.append(event)

        mock_network.publish.side_effect = publish

        with pytest.raises(DVMConnectionError):
            await dvm.process_job(sample_request, identity)

        assert statuses(mock_network) == ["processing", "error"]

    @pytest.mark.asyncio
    async def test_feedback_failure_does_not_fail_job(
        self,
        dvm: Dvm,
        mock_network: MagicMock,
        identity: DvmIdentity,
        sample_request: dict[str, Any],
    ) -> None:
        async def publish(event: dict[str, Any], relays: Any = None) -> None:
            if event["kind"] == JOB_FEEDBACK_KIND:
                raise DVMConnectionError("Failed to publish event to any relay")
            mock_network.published.append(event)

        mock_network.publish.side_effect = publish

        result = await dvm.process_job(sample_request, identity)

        assert result.request_id == sample_request["id"]
        assert len(published_results(mock_network)) == 1

    @pytest.mark.asyncio
    async def test_encrypted_request(
        self,
        mock_network: MagicMock,
        dvm_config: DvmConfig,
        mock_inference: MagicMock,
        mock_payments: MagicMock,
        identity: DvmIdentity,
        requester_keys: tuple[str, str],
        make_request: Callable[..., dict[str, Any]],
    ) -> None:
        cipher = Nip04Cipher()
        dvm = Dvm(
            network=mock_network,
            config=dvm_config,
            inference=mock_inference,
            payments=mock_payments,
            cipher=cipher,
        )
        hidden = json.dumps([["i", "secret prompt", "text"]])
        content = cipher.encrypt(requester_keys[0], identity.public_key, hidden)
        event = make_request(tags=[["p", identity.public_key], ["encrypted"]], content=content)

        await dvm.process_job(event, identity)

        prompt = mock_inference.complete.call_args[0][1][0]["content"]
        assert prompt == "secret prompt"

        result = published_results(mock_network)[0]
        assert ["encrypted"] in result["tags"]
        assert find_tag(result, "i") is None
        assert cipher.decrypt(requester_keys[0], identity.public_key, result["content"]) == (
            "Bonjour le monde"
        )

    @pytest.mark.asyncio
    async def test_unknown_error_classified(
        self,
        dvm: Dvm,
        mock_network: MagicMock,
        identity: DvmIdentity,
        sample_request: dict[str, Any],
    ) -> None:
        # Unexpected failure outside any provider call.
        dvm._infer = AsyncMock(return_value=None)  # type: ignore[method-assign]

        with pytest.raises(JobProcessingError, match="Unknown error during job processing"):
            await dvm.process_job(sample_request, identity)

        error = published_feedback(mock_network)[-1]
        assert find_tag(error, "status")[2] == "Unknown error during job processing"


class TestPublishFeedback:
    """Tests for Dvm.publish_feedback."""

    @pytest.mark.asyncio
    async def test_never_raises(self, dvm: Dvm, mock_network: MagicMock) -> None:
        mock_network.publish.side_effect = DVMConnectionError("down")
        await dvm.publish_feedback(JobFeedback("r" * 64, "p" * 64, FeedbackStatus.PROCESSING))
        mock_network.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_signed_by_identity(
        self, dvm: Dvm, mock_network: MagicMock, identity: DvmIdentity
    ) -> None:
        await dvm.publish_feedback(JobFeedback("r" * 64, "p" * 64, FeedbackStatus.PROCESSING))
        assert mock_network.published[0]["pubkey"] == identity.public_key
        assert mock_network.publish.call_args.kwargs["relays"] == identity.relays


# ============================================================================
# Listener
# ============================================================================


class TestListener:
    """Tests for Dvm.start / Dvm.stop and event intake."""

    @pytest.mark.asyncio
    async def test_start_requires_private_key(
        self, mock_network: MagicMock, mock_inference: MagicMock, mock_payments: MagicMock
    ) -> None:
        dvm = Dvm(
            network=mock_network,
            config=DvmConfig(),
            inference=mock_inference,
            payments=mock_payments,
        )
        with pytest.raises(ConfigurationError):
            await dvm.start()
        mock_network.subscribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_start_requires_relays(
        self,
        mock_network: MagicMock,
        mock_inference: MagicMock,
        mock_payments: MagicMock,
        dvm_keys: tuple[str, str],
    ) -> None:
        config = DvmConfig(identity={"private_key": dvm_keys[0], "relays": []})
        dvm = Dvm(network=mock_network, config=config, inference=mock_inference, payments=mock_payments)
        with pytest.raises(ConfigurationError):
            await dvm.start()

    @pytest.mark.asyncio
    async def test_subscribe_failure(self, dvm: Dvm, mock_network: MagicMock) -> None:
        mock_network.subscribe.side_effect = OSError("unreachable")
        with pytest.raises(DVMConnectionError):
            await dvm.start()

    @pytest.mark.asyncio
    async def test_subscribes_to_supported_kinds(
        self, dvm: Dvm, mock_network: MagicMock, identity: DvmIdentity
    ) -> None:
        handle = await dvm.start()

        filters = mock_network.subscribe.call_args[0][0]
        assert filters[0]["kinds"] == [5050, 5100]
        assert "since" in filters[0]
        assert mock_network.subscribe.call_args.kwargs["relays"] == identity.relays

        await dvm.stop(handle)
        mock_network.subscription.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_own_result_never_processed(
        self, dvm: Dvm, identity: DvmIdentity
    ) -> None:
        dvm.process_job = AsyncMock()  # type: ignore[method-assign]
        handle = await dvm.start()

        own_result = build_event(identity.private_key, 6100, [["e", "a" * 64]], "done")
        own_feedback = build_event(identity.private_key, 7000, [["status", "success"]], "")
        dvm._on_event(handle, own_result)
        dvm._on_event(handle, own_feedback)
        await asyncio.sleep(0)

        await dvm.stop(handle)
        dvm.process_job.assert_not_called()
        assert handle.jobs == set()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_runs_once(
        self, dvm: Dvm, sample_request: dict[str, Any]
    ) -> None:
        dvm.process_job = AsyncMock()  # type: ignore[method-assign]
        handle = await dvm.start()

        dvm._on_event(handle, sample_request)
        dvm._on_event(handle, dict(sample_request))
        await asyncio.gather(*handle.jobs)

        await dvm.stop(handle)
        dvm.process_job.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_seen_ids_bounded_by_dedup_window(
        self,
        mock_network: MagicMock,
        mock_inference: MagicMock,
        mock_payments: MagicMock,
        identity: DvmIdentity,
        sample_request: dict[str, Any],
    ) -> None:
        config = DvmConfig(
            identity=identity, network={"dedup_window": 100}, payments={"enabled": False}
        )
        dvm = Dvm(network=mock_network, config=config, inference=mock_inference, payments=mock_payments)
        dvm.process_job = AsyncMock()  # type: ignore[method-assign]
        handle = await dvm.start()

        ids = [f"{i:064x}" for i in range(150)]
        for event_id in ids:
            dvm._on_event(handle, dict(sample_request, id=event_id))
        await asyncio.gather(*handle.jobs)

        await dvm.stop(handle)
        assert dvm.process_job.await_count == 150
        assert len(handle.seen) == 100
        assert ids[0] not in handle.seen
        assert ids[-1] in handle.seen

    @pytest.mark.asyncio
    async def test_failed_job_does_not_escape(
        self, dvm: Dvm, make_request: Callable[..., dict[str, Any]]
    ) -> None:
        handle = await dvm.start()

        dvm._on_event(handle, make_request(tags=[]))
        await asyncio.gather(*handle.jobs)

        assert handle.in_flight == 0
        await dvm.stop(handle)

    @pytest.mark.asyncio
    async def test_events_ignored_after_stop(
        self, dvm: Dvm, sample_request: dict[str, Any]
    ) -> None:
        dvm.process_job = AsyncMock()  # type: ignore[method-assign]
        handle = await dvm.start()
        await dvm.stop(handle)

        dvm._on_event(handle, sample_request)

        assert handle.jobs == set()

    @pytest.mark.asyncio
    async def test_stop_cancels_jobs(
        self, dvm: Dvm, mock_inference: MagicMock, sample_request: dict[str, Any]
    ) -> None:
        started = asyncio.Event()

        async def slow(*args: Any, **kwargs: Any) -> InferenceResult:
            started.set()
            await asyncio.sleep(3600)
            return InferenceResult(content="never", model="m")

        mock_inference.complete.side_effect = slow
        handle = await dvm.start()
        dvm._on_event(handle, sample_request)
        await asyncio.wait_for(started.wait(), timeout=1.0)

        await dvm.stop(handle, cancel_jobs=True)

        assert handle.in_flight == 0

    @pytest.mark.asyncio
    async def test_stop_ends_reconciliation(
        self,
        mock_network: MagicMock,
        mock_inference: MagicMock,
        mock_payments: MagicMock,
        identity: DvmIdentity,
    ) -> None:
        config = DvmConfig(identity=identity, payments={"interval": 3600})
        dvm = Dvm(network=mock_network, config=config, inference=mock_inference, payments=mock_payments)

        handle = await dvm.start()
        assert handle.reconciler_task is not None
        await asyncio.sleep(0.01)

        await dvm.stop(handle)

        assert handle.reconciler_task.done()
        assert handle.reconciler.is_running is False

    @pytest.mark.asyncio
    async def test_run_until_shutdown(self, dvm: Dvm, mock_network: MagicMock) -> None:
        async def shutdown_later() -> None:
            await asyncio.sleep(0.02)
            dvm.request_shutdown()

        asyncio.create_task(shutdown_later())
        async with dvm:
            await asyncio.wait_for(dvm.run(), timeout=1.0)

        mock_network.subscribe.assert_awaited_once()
        mock_network.subscription.close.assert_awaited_once()
