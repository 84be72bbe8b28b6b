"""
Base class for DVM services.

A service owns a typed pydantic configuration, a structured logger and a
shutdown event. Long-running loops call ``wait()`` between cycles so that
``request_shutdown()`` (safe to call from signal handlers) interrupts them
immediately.

Services talk to relays through the ``EventNetwork`` they are constructed
with; any further collaborators are passed as keyword arguments.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, ClassVar, Generic, Optional, TypeVar

import yaml
from pydantic import BaseModel

from .logger import Logger
from .relays import EventNetwork

ConfigT = TypeVar("ConfigT", bound=BaseModel)


class BaseService(ABC, Generic[ConfigT]):
    """
    Abstract base class for DVM services.

    Subclasses set SERVICE_NAME and CONFIG_CLASS and implement run().

    Class Attributes:
        SERVICE_NAME: Identifier used as the logger name
        CONFIG_CLASS: Pydantic model class for configuration parsing
        MAX_CONSECUTIVE_FAILURES: Default limit before run_forever stops
    """

    SERVICE_NAME: ClassVar[str] = "base_service"
    CONFIG_CLASS: ClassVar[Optional[type[BaseModel]]] = None
    MAX_CONSECUTIVE_FAILURES: ClassVar[int] = 5

    def __init__(self, network: EventNetwork, config: Optional[ConfigT] = None) -> None:
        if config is None and self.CONFIG_CLASS is not None:
            config = self.CONFIG_CLASS()  # type: ignore[assignment]
        self._network = network
        self._config: Optional[ConfigT] = config
        self._is_running = False
        self._logger = Logger(self.SERVICE_NAME)
        self._shutdown_event = asyncio.Event()

    @abstractmethod
    async def run(self) -> None:
        """Execute main service logic."""
        ...

    @property
    def is_running(self) -> bool:
        return self._is_running

    def request_shutdown(self) -> None:
        """Request graceful shutdown (sync-safe for signal handlers)."""
        self._is_running = False
        self._shutdown_event.set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for shutdown or timeout.

        Returns True if shutdown was requested, False if the timeout expired.
        With no timeout, waits until shutdown is requested.
        """
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def run_forever(
        self,
        interval: float,
        max_consecutive_failures: Optional[int] = None,
    ) -> None:
        """
        Call run() every ``interval`` seconds until shutdown is requested.

        Args:
            interval: Seconds to wait between run() cycles
            max_consecutive_failures: Stop after this many consecutive errors
                                      (0 = unlimited, None = use class default)
        """
        failure_limit = (
            max_consecutive_failures
            if max_consecutive_failures is not None
            else self.MAX_CONSECUTIVE_FAILURES
        )

        self._is_running = True
        self._logger.info(
            "run_forever_started",
            interval=interval,
            max_consecutive_failures=failure_limit,
        )

        consecutive_failures = 0

        while self._is_running and not self._shutdown_event.is_set():
            try:
                await self.run()
                consecutive_failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:
                consecutive_failures += 1
                self._logger.error(
                    "run_cycle_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    consecutive_failures=consecutive_failures,
                )

                if failure_limit > 0 and consecutive_failures >= failure_limit:
                    self._logger.critical(
                        "max_consecutive_failures_reached",
                        failures=consecutive_failures,
                        limit=failure_limit,
                    )
                    break

            self._logger.debug("cycle_completed", next_run_in_seconds=interval)

            if await self.wait(interval):
                break

        self._is_running = False
        self._logger.info("run_forever_stopped")

    # -------------------------------------------------------------------------
    # Factory Methods
    # -------------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, config_path: str, network: EventNetwork, **kwargs: Any) -> "BaseService":
        """Create service from YAML configuration file."""
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data, network=network, **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], network: EventNetwork, **kwargs: Any) -> "BaseService":
        """Create service from dictionary configuration."""
        config = None
        if cls.CONFIG_CLASS is not None:
            config = cls.CONFIG_CLASS(**data)
        return cls(network=network, config=config, **kwargs)

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> "BaseService":
        self._is_running = True
        self._shutdown_event.clear()
        self._logger.info("started")
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        self._is_running = False
        self._shutdown_event.set()
        self._logger.info("stopped")

    @property
    def config(self) -> Optional[ConfigT]:
        """Get service configuration (typed to CONFIG_CLASS)."""
        return self._config
