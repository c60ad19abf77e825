# src/tradewatch/main.py
import asyncio
import signal
import sys

import structlog
from dotenv import load_dotenv

from tradewatch.backend.api import BackendClient
from tradewatch.config import ConfigError, WorkerSettings, config_from_env
from tradewatch.health import HealthServer, create_app
from tradewatch.notify.dispatch import DispatchClient
from tradewatch.utils.logging import configure_logging
from tradewatch.workers.base import DispatchingWorker
from tradewatch.workers.price_alerts import PriceAlertConfig, PriceAlertWorker
from tradewatch.workers.volume import VolumeAlertWorker, VolumeWorkerConfig

log = structlog.get_logger()


def build_workers(cfg: WorkerSettings, api: BackendClient, dispatcher: DispatchClient) -> list[DispatchingWorker]:
    workers: list[DispatchingWorker] = []
    common = dict(
        window_seconds=cfg.volume_window_s,
        threshold_usd=cfg.volume_threshold_usd,
        cooldown_seconds=cfg.volume_cooldown_s,
        symbol_refresh_interval_s=cfg.symbol_refresh_interval_s,
        settings_refresh_interval_s=cfg.settings_refresh_interval_s,
        ws_base_delay_s=cfg.ws_retry_base_s,
        ws_max_delay_s=cfg.ws_retry_max_s,
    )
    if cfg.enable_spot:
        workers.append(VolumeAlertWorker(
            VolumeWorkerConfig(market="spot", ws_url=cfg.spot_ws_url, symbols=cfg.spot_symbols, **common),
            api, dispatcher,
        ))
    if cfg.enable_futures:
        workers.append(VolumeAlertWorker(
            VolumeWorkerConfig(
                market="futures",
                ws_url=cfg.futures_ws_url,
                symbols=cfg.futures_symbols,
                **common,
            ),
            api, dispatcher,
        ))
    if cfg.enable_price_alerts:
        workers.append(PriceAlertWorker(
            PriceAlertConfig(
                ws_url=cfg.spot_ws_url,
                symbols=cfg.price_symbols,
                refresh_interval_s=cfg.alert_refresh_interval_s,
                ws_base_delay_s=cfg.ws_retry_base_s,
                ws_max_delay_s=cfg.ws_retry_max_s,
            ),
            api, dispatcher,
        ))
    return workers


async def main(cfg: WorkerSettings) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    api = BackendClient(cfg.backend_base_url, cfg.worker_api_token)
    dispatcher = DispatchClient(cfg.backend_base_url, cfg.alert_trigger_token)
    await api.start()
    await dispatcher.start()

    workers = build_workers(cfg, api, dispatcher)
    server = HealthServer(create_app(workers, cfg.admin_token), cfg.port)

    log.info(
        "tradewatch_starting",
        backend=cfg.backend_base_url,
        workers=[w.name for w in workers],
        window_s=cfg.volume_window_s,
        threshold_usd=cfg.volume_threshold_usd,
    )

    try:
        try:
            await server.start()
        except OSError as e:
            # health endpoint is auxiliary; keep processing without it
            log.error("health_server_failed", err=str(e), port=cfg.port)
        for w in workers:
            await w.start()
        await stop.wait()
        log.info("shutdown_requested")
    finally:
        # graceful shutdown to avoid unclosed sessions
        for w in workers:
            try:
                await w.stop()
            except Exception as e:
                log.warning("worker_stop_failed", worker=w.name, err=str(e))
        await server.stop()
        await dispatcher.stop()
        await api.stop()
        log.info("tradewatch_stopped")


def run() -> None:
    load_dotenv()
    try:
        cfg = config_from_env()
    except ConfigError as e:
        configure_logging("info")
        log.error("config_error", err=str(e))
        sys.exit(1)

    configure_logging(cfg.log_level)
    try:
        asyncio.run(main(cfg))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
