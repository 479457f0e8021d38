from __future__ import annotations

import argparse
import asyncio
import os
import signal
from pathlib import Path
from typing import List, Optional

from brokerage.kite_client import load_kite_credentials
from engine.alerts import configure_alerts, notify_incident
from engine.broker import BrokerGateway, KiteBroker
from engine.config import EngineConfig
from engine.confirmation import OrderConfirmationEngine
from engine.execution import TradeExecutor
from engine.ledger import PositionLedger
from engine.logging_utils import configure_logging, get_logger
from engine.metrics import EngineMetrics, bind_global_metrics, start_http_server_if_available
from engine.monitoring import OrderMonitor
from engine.options_bot import OptionsBot
from engine.reconciliation import PositionReconciler
from engine.scheduler import ExitScheduler, default_process_id
from engine.validation import PositionValidator
from persistence import SQLiteStore


class EngineApp:
    """Wires the broker, ledger, confirmation, scheduler, monitor and reconciler together."""

    def __init__(self, config: EngineConfig, *, broker: Optional[BrokerGateway] = None, metrics: Optional[EngineMetrics] = None):
        self.cfg = config
        self.logger = get_logger("EngineApp", run_id=config.run_id)
        self.process_id = default_process_id()
        self.metrics = metrics or EngineMetrics()
        bind_global_metrics(self.metrics)
        configure_alerts(config.alerts.throttle_seconds, min_level=config.alerts.min_level)
        self.store = SQLiteStore(config.persistence_path, run_id=config.run_id, process_id=self.process_id)
        self.broker: BrokerGateway = broker or KiteBroker(
            config=config.broker,
            credentials=load_kite_credentials(config.secrets),
            metrics=self.metrics,
            auth_halt_callback=self._on_auth_halt,
        )
        self.ledger = PositionLedger(self.store, config=config.ledger, metrics=self.metrics)
        self.confirmation = OrderConfirmationEngine(self.broker, self.store, config=config.confirmation, metrics=self.metrics)
        self.executor = TradeExecutor(self.confirmation, self.ledger, config=config.ledger)
        self.validator = PositionValidator(self.broker, self.store)
        self.scheduler = ExitScheduler(
            self.store,
            self.ledger,
            self.validator,
            self.executor.auto_square_off,
            config=config.scheduler,
            process_id=self.process_id,
            metrics=self.metrics,
        )
        self.executor.bind_scheduler(self.scheduler)
        self.ledger.bind_exit_canceller(self.scheduler.cancel_position_exit)
        self.monitor = OrderMonitor(
            self.confirmation,
            self.store,
            fill_handler=self.executor.handle_fill,
            config=config.monitor,
            metrics=self.metrics,
        )
        self.reconciler = PositionReconciler(
            self.ledger,
            self.validator,
            self.store,
            config=config.reconciliation,
            metrics=self.metrics,
        )
        self.bot = OptionsBot(self.broker, self.executor, self.ledger, options_config=config.options)
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self, *, start_monitor: bool = True) -> dict:
        summary = await self.scheduler.initialize()
        if start_monitor:
            self.monitor.start()
        if self.cfg.reconciliation.interval_seconds > 0:
            self._tasks.append(asyncio.create_task(self._reconcile_loop(), name="reconciliation"))
        self.metrics.set_open_positions(len(self.ledger.get_open_positions()))
        self.logger.log_event(20, "engine_started", process_id=self.process_id, **summary)
        return summary

    async def run(self) -> None:
        configure_logging(self.cfg.telemetry.log_level, filename=self.cfg.telemetry.log_file)
        self.logger.log_event(20, "engine_starting", persistence=str(self.cfg.persistence_path))
        self._install_signal_handlers()
        metrics_port = self._resolve_metrics_port()
        started = start_http_server_if_available(metrics_port)
        self.logger.log_event(20, "metrics_bootstrap", port=metrics_port, started=started)
        await self.start()
        try:
            while not self._stop.is_set():
                self.metrics.beat()
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=5.0)
                except asyncio.TimeoutError:
                    continue
        finally:
            await self.shutdown()

    async def trigger_shutdown(self, reason: str) -> None:
        if not self._stop.is_set():
            self.logger.log_event(20, "shutdown", reason=reason)
            self._stop.set()

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self.monitor.stop()
        await self.scheduler.shutdown()
        self.store.close()
        self.logger.log_event(20, "engine_stopped")

    async def _reconcile_loop(self) -> None:
        while not self._stop.is_set():
            await asyncio.sleep(self.cfg.reconciliation.interval_seconds)
            try:
                results = await self.reconciler.reconcile()
                await self.reconciler.execute(results)
            except Exception as exc:
                self.logger.log_event(40, "reconciliation_cycle_failed", error=str(exc))

    async def _on_auth_halt(self, reason: str) -> None:
        self.logger.log_event(40, "broker_auth_halted", reason=reason)
        notify_incident("ERROR", "Broker session expired", reason, tags=["auth"])

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda sig=sig: asyncio.create_task(self.trigger_shutdown(f"signal:{sig.name}")))

    def _resolve_metrics_port(self) -> int:
        if self.cfg.telemetry.metrics_port:
            return int(self.cfg.telemetry.metrics_port)
        raw = os.getenv("METRICS_PORT", "9103")
        try:
            return int(raw)
        except ValueError:
            self.logger.log_event(30, "metrics_port_invalid", value=raw)
            return 9103


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Options execution engine")
    parser.add_argument("--config", type=Path, default=None, help="Override config/app.yml")
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    cfg = EngineConfig.load(args.config)
    app = EngineApp(cfg)
    await app.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:  # pragma: no cover
        pass
