"""
nostr-dvm - A NIP-90 Data Vending Machine for text generation.

Packages:
    core: Foundation components (BaseService, Logger, relays, NIP-90, providers)
    services: Service implementations (Dvm, PaymentReconciler, JobHistory)
"""

__version__ = "0.1.0"
