import asyncio
import signal
from pathlib import Path

import structlog
from prometheus_client import start_http_server

from tokenpool.activity_log import make_local_loader
from tokenpool.cache import TieredCache
from tokenpool.cli import parse_args
from tokenpool.config import Config
from tokenpool.errors import PricingError
from tokenpool.logging import setup_logging
from tokenpool.metrics import MetricsUpdater
from tokenpool.monitor import LiveMonitor
from tokenpool.pricing import ModelPrice, PricingClient, load_offline_pricing
from tokenpool.resolver import ConfigResolver
from tokenpool.selector import WindowSelector
from tokenpool.service import GroupUsageService
from tokenpool.store.supabase import SupabaseStore
from tokenpool.sync import SyncBridge

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def _offline_pricing(config: "Config") -> "dict[str, ModelPrice] | None":
    if not config.offline_pricing:
        return None
    try:
        return load_offline_pricing(Path(config.offline_pricing).expanduser())
    except PricingError as exc:
        logger.warning("offline_pricing_unavailable", error=str(exc))
        return None


def build_service(config: "Config") -> "GroupUsageService":
    """
    wires the store, the price oracle, the caches and the local window
    selector into one service instance.
    """
    caches = TieredCache()
    store = SupabaseStore(url=config.supabase_url, api_key=config.supabase_key)
    pricing = PricingClient(
        url=config.pricing_url,
        offline_pricing=_offline_pricing(config),
    )
    selector = WindowSelector(
        loader=make_local_loader(
            config.data_dirs, config.window_duration, pricing=pricing
        ),
        bounds=config.activity_bounds,
    )
    resolver = ConfigResolver(store=store, pricing=pricing, caches=caches)
    return GroupUsageService(
        store=store,
        selector=selector,
        resolver=resolver,
        caches=caches,
        exclude_self_from_peers=config.exclude_self_from_peers,
    )


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, config.log_json)

    missing = config.missing()
    if missing:
        raise SystemExit(
            f"Missing configuration. Set {', '.join(missing)} environment variables."
        )

    metrics_updater: "MetricsUpdater | None" = None
    if config.listen_address:
        metrics_updater = MetricsUpdater()
        host, port = _parse_listen_address(config.listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)

    async def _run() -> "None":
        async with build_service(config) as service:
            monitor = LiveMonitor(
                service,
                group_id=config.group_id,
                actor_id=config.actor_id,
                metrics_updater=metrics_updater,
                refresh_interval_seconds=config.refresh_interval,
                publish_live_status=config.publish_live_status,
            )
            loops: "list[LiveMonitor | SyncBridge]" = [monitor]
            tasks = [monitor.run()]

            if config.sync_enabled:
                bridge = SyncBridge(
                    service,
                    group_id=config.group_id,
                    actor_id=config.actor_id,
                    metrics_updater=metrics_updater,
                    sync_interval_seconds=config.sync_interval,
                )
                loops.append(bridge)
                tasks.append(bridge.run())

            def _stop_all() -> "None":
                for runner in loops:
                    runner.stop()

            loop = asyncio.get_running_loop()
            # for SIGINT and SIGTERM, signal every loop
            # to stop gracefully
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, _stop_all)

            try:
                await asyncio.gather(*tasks)
            finally:
                logger.info("shutting_down")
        logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
