"""
DVM Core Layer.

Foundation components shared by the services:
- BaseService: Generic base class for all services with typed config
- Logger: Structured logging with JSON support and bound context
- errors: DVMError taxonomy
- events / nip04 / nip90: Nostr event signing, encryption and job wire shapes
- identity: DVM keys, relays, supported kinds and pricing
- relays: Relay subscribe/publish/list client
- ollama / lightning: Inference and payment provider adapters

Example:
    from core import DvmIdentity, Logger, RelayNetwork

    identity = DvmIdentity(relays=["wss://relay.damus.io"])
    network = RelayNetwork(relays=identity.relays)

    events = await network.list([{"kinds": [6050], "authors": [identity.public_key]}])
"""

from .base_service import (
    BaseService,
    ConfigT,
)
from .errors import (
    ConfigurationError,
    DVMConnectionError,
    DVMError,
    JobProcessingError,
    JobRequestError,
    PaymentError,
)
from .identity import (
    DvmIdentity,
    TextGenerationConfig,
)
from .lightning import (
    Invoice,
    InvoiceStatus,
    LightningConfig,
    LightningError,
    LndClient,
    PaymentProvider,
)
from .logger import Logger
from .nip04 import (
    Nip04Cipher,
    Nip04Error,
    PayloadCipher,
)
from .nip90 import (
    FeedbackStatus,
    JobFeedback,
    JobInput,
    JobRequest,
    JobResult,
    decode_job_request,
)
from .ollama import (
    InferenceProvider,
    InferenceResult,
    OllamaClient,
    OllamaConfig,
    OllamaError,
    TokenUsage,
)
from .relays import (
    EventNetwork,
    RelayNetwork,
    RelayNetworkConfig,
    SeenIds,
    Subscription,
    TorConfig,
)

__all__ = [
    # Base Service
    "BaseService",
    "ConfigT",
    # Errors
    "ConfigurationError",
    "DVMConnectionError",
    "DVMError",
    "JobProcessingError",
    "JobRequestError",
    "PaymentError",
    # Identity
    "DvmIdentity",
    "TextGenerationConfig",
    # Lightning
    "Invoice",
    "InvoiceStatus",
    "LightningConfig",
    "LightningError",
    "LndClient",
    "PaymentProvider",
    # Logger
    "Logger",
    # NIP-04
    "Nip04Cipher",
    "Nip04Error",
    "PayloadCipher",
    # NIP-90
    "FeedbackStatus",
    "JobFeedback",
    "JobInput",
    "JobRequest",
    "JobResult",
    "decode_job_request",
    # Ollama
    "InferenceProvider",
    "InferenceResult",
    "OllamaClient",
    "OllamaConfig",
    "OllamaError",
    "TokenUsage",
    # Relays
    "EventNetwork",
    "RelayNetwork",
    "RelayNetworkConfig",
    "SeenIds",
    "Subscription",
    "TorConfig",
]
