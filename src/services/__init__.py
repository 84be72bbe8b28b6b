"""
DVM Services Package.

Services that build on the core layer:
- Dvm: NIP-90 job listener and executor
- PaymentReconciler: Periodic invoice status polling
- JobHistory: Job history and statistics rebuilt from published events

Example:
    from core.relays import RelayNetwork
    from services import Dvm, DvmConfig

    config = DvmConfig(identity={"relays": ["wss://relay.damus.io"]})
    network = RelayNetwork(relays=config.identity.relays, config=config.network)

    dvm = Dvm(network=network, config=config)
    async with dvm:
        await dvm.run()
"""

from .dvm import (
    Dvm,
    DvmConfig,
    JobStage,
    ListenerHandle,
    calculate_price_sats,
    estimate_tokens,
)
from .history import (
    HistoryConfig,
    JobHistory,
    JobHistoryEntry,
    JobHistoryPage,
    JobStatistics,
)
from .payments import (
    PaymentReconciler,
    PaymentsConfig,
)

__all__ = [
    # Dvm
    "Dvm",
    "DvmConfig",
    "JobStage",
    "ListenerHandle",
    "calculate_price_sats",
    "estimate_tokens",
    # History
    "HistoryConfig",
    "JobHistory",
    "JobHistoryEntry",
    "JobHistoryPage",
    "JobStatistics",
    # Payments
    "PaymentReconciler",
    "PaymentsConfig",
]
