"""
Service Container — wires and owns all shared service instances.

SRP:  This module's only job is construction + lifecycle of shared services.
DIP:  All consumers receive interfaces, not concrete classes.
OCP:  Adding a new service = one new property; existing code untouched.

Usage:
    container = ServiceContainer(cfg)       # build once at startup
    bot       = TradingBot(container)

    # Tests swap in doubles before first access:
    container.override(exchange=PaperExchangeAdapter(), store=InMemoryStateStore())
"""
from __future__ import annotations

from typing import Optional
from loguru import logger

from config import BotConfig, get_config
from interfaces import IExchangeAdapter, INotifier, ISignalSource, IStateStore


class ServiceContainer:
    """
    Owns and lazily constructs all shared service instances.

    Every property returns a Protocol-typed reference so consumers
    never depend on concrete implementations.
    """

    def __init__(self, cfg: Optional[BotConfig] = None):
        self.cfg = cfg or get_config()
        self._exchange: Optional[IExchangeAdapter] = None
        self._requests = None
        self._store: Optional[IStateStore] = None
        self._signals: Optional[ISignalSource] = None
        self._notifier: Optional[INotifier] = None
        self._risk_engine = None
        self._engine = None
        self._monitor = None
        logger.info("ServiceContainer initialised")

    # ── Lazy constructors ────────────────────────────────────────────────

    @property
    def exchange(self) -> IExchangeAdapter:
        if self._exchange is None:
            if self.cfg.exchange.use_mock:
                from exchange.paper_adapter import PaperExchangeAdapter
                self._exchange = PaperExchangeAdapter()
            else:
                from exchange.ccxt_adapter import CcxtExchangeAdapter
                self._exchange = CcxtExchangeAdapter(self.cfg.exchange)
        return self._exchange

    @property
    def requests(self):
        if self._requests is None:
            from execution.request_layer import ResilientRequestLayer
            self._requests = ResilientRequestLayer.from_config(self.cfg.requests)
        return self._requests

    @property
    def store(self) -> IStateStore:
        if self._store is None:
            if self.cfg.redis.enabled:
                from storage.redis_store import RedisStateStore
                self._store = RedisStateStore.from_config(self.cfg.redis)
            else:
                from storage.memory_store import InMemoryStateStore
                self._store = InMemoryStateStore()
        return self._store

    @property
    def signals(self) -> ISignalSource:
        if self._signals is None:
            if self.cfg.redis.enabled:
                from signals.redis_source import RedisSignalSource
                self._signals = RedisSignalSource.from_config(self.cfg.redis)
            else:
                from signals.static_source import StaticSignalSource
                self._signals = StaticSignalSource()
        return self._signals

    @property
    def notifier(self) -> INotifier:
        if self._notifier is None:
            from monitoring.notifier import LogNotifier, WebhookNotifier
            if self.cfg.notifier.webhook_url:
                self._notifier = WebhookNotifier.from_config(self.cfg.notifier)
            else:
                self._notifier = LogNotifier()
        return self._notifier

    @property
    def risk_engine(self):
        if self._risk_engine is None:
            from execution.risk_engine import RiskEngine
            self._risk_engine = RiskEngine(self.cfg.risk)
        return self._risk_engine

    @property
    def engine(self):
        if self._engine is None:
            from execution.execution_engine import ExecutionEngine
            self._engine = ExecutionEngine(
                self.exchange, self.requests, self.store, self.notifier,
                self.risk_engine, self.cfg.execution)
        return self._engine

    @property
    def monitor(self):
        if self._monitor is None:
            from execution.position_monitor import PositionMonitor
            self._monitor = PositionMonitor(
                self.engine, self.exchange, self.requests, self.store,
                self.signals, self.notifier, self.cfg.monitor)
        return self._monitor

    # ── Inject overrides (for testing / paper runs) ──────────────────────

    def override(self, **kwargs):
        """
        Override any service with a mock/stub.

        Example:
            container.override(exchange=PaperExchangeAdapter())
        """
        for key, value in kwargs.items():
            attr = f"_{key}"
            if hasattr(self, attr):
                setattr(self, attr, value)
                logger.debug(f"ServiceContainer: overrode {key}")
            else:
                raise KeyError(f"Unknown service: {key}")

    async def aclose(self) -> None:
        """Release network resources held by constructed services."""
        for service in (self._exchange, self._store, self._signals, self._notifier):
            close = getattr(service, "close", None)
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error closing {type(service).__name__}: {e}")
