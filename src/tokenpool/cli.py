import argparse

from tokenpool.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="tokenpool",
        description="Shared token usage monitor for a group of API consumers",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default="",
        help="Address to serve Prometheus metrics on, e.g. :9186 (default: disabled)",
    )
    parser.add_argument(
        "--refresh.interval",
        dest="refresh_interval",
        type=int,
        default=5,
        help="Refresh interval in seconds (default: 5)",
    )
    parser.add_argument(
        "--sync.interval",
        dest="sync_interval",
        type=int,
        default=30,
        help="Window push interval in seconds (default: 30)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.json",
        dest="log_json",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    parser.add_argument(
        "--no-sync",
        dest="sync_enabled",
        action="store_false",
        help="Do not push the local window to the group",
    )
    parser.add_argument(
        "--publish-live-status",
        dest="publish_live_status",
        action="store_true",
        help="Write the group live status row after every refresh",
    )

    args = parser.parse_args(argv)
    for name in ("refresh_interval", "sync_interval"):
        if getattr(args, name) <= 0:
            parser.error(f"{name.replace('_', '.')} must be positive")

    try:
        config = Config.from_env()
    except ValueError as exc:
        parser.error(str(exc))

    config.listen_address = args.listen_address
    config.refresh_interval = args.refresh_interval
    config.sync_interval = args.sync_interval
    config.log_level = args.log_level
    config.log_json = args.log_json
    config.sync_enabled = args.sync_enabled
    config.publish_live_status = args.publish_live_status
    return config
