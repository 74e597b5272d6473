"""
Firelink CLI 入口

用法:
    firelink get PATH             # 读取路径上的值
    firelink server-time PATH     # 通过写入哨兵获取服务器时间
    firelink listen PATH          # 监听路径上的变更
"""

import argparse
import asyncio
import json
import logging
from typing import Any, Optional

from firelink.core.config import Config, load_config


def setup_logging(debug: bool = False, log_format: Optional[str] = None):
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format=log_format or "%(asctime)s - %(levelname)s - %(message)s"
    )


def _parse_value(raw: Optional[str]) -> Any:
    """命令行参数按 JSON 解析, 失败时按字符串处理"""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _create_backend(name: str):
    if name == "memory":
        from firelink.connection.memory import MemoryBackend
        return MemoryBackend()

    from firelink.connection.firebase import FirebaseAdminBackend
    return FirebaseAdminBackend()


async def _connected_service(args, config: Config):
    from firelink.connection import FirebaseService

    service = FirebaseService(_create_backend(args.backend), name=args.name)
    await service.connect(config.firebase.to_options(), config.firebase.credentials or None)
    return service


async def cmd_get(args, config: Config):
    """读取路径上的值"""
    service = await _connected_service(args, config)
    try:
        value = await service.get_values_at_path(args.path)
        print(json.dumps(value, indent=2, ensure_ascii=False, default=str))
    finally:
        await service.terminate()


async def cmd_server_time(args, config: Config):
    """获取服务器时间"""
    from firelink.core.time import format_server_time

    service = await _connected_service(args, config)
    try:
        server_time = await service.get_firebase_server_time(args.path)
        print(f"{server_time} ({format_server_time(server_time)})")
    finally:
        await service.terminate()


async def cmd_listen(args, config: Config):
    """监听路径"""
    runner = None
    metrics_port = args.metrics_port or (config.metrics.port if config.metrics.enabled else None)
    if metrics_port:
        from firelink.metrics import start_metrics_server
        runner = await start_metrics_server(host=config.metrics.host, port=metrics_port)

    service = await _connected_service(args, config)

    def on_event(event):
        print(json.dumps({"key": event.key, "value": event.value}, ensure_ascii=False, default=str))

    options = {"order_by": args.order_by, "start_at": _parse_value(args.start_at)}
    service.listen_on_path(args.path, options).when(args.event).call(on_event)
    print(f"Listening on {args.path} ({args.event})... (Ctrl+C to stop)")

    try:
        if args.duration:
            await asyncio.sleep(args.duration)
        else:
            while True:
                await asyncio.sleep(1)
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    finally:
        await service.terminate()
        if runner:
            await runner.cleanup()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="firelink",
        description="Firelink realtime database CLI"
    )
    parser.add_argument("--debug", action="store_true", help="Debug mode")
    parser.add_argument("-c", "--config", default=None, help="Config file (default config/default.yaml)")
    parser.add_argument("--backend", choices=["firebase", "memory"], default="firebase")
    parser.add_argument("--name", default=None, help="Service instance name")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # get command
    get_parser = subparsers.add_parser("get", help="Read values at a path")
    get_parser.add_argument("path")

    # server-time command
    time_parser = subparsers.add_parser("server-time", help="Get Firebase server time")
    time_parser.add_argument("path", nargs="?", default="/firelink/server-time")

    # listen command
    listen_parser = subparsers.add_parser("listen", help="Listen on a path")
    listen_parser.add_argument("path")
    listen_parser.add_argument("-e", "--event", default="value", help="value, child_added, child_changed, child_removed")
    listen_parser.add_argument("--order-by", default=None, help="Order by child field")
    listen_parser.add_argument("--start-at", default=None, help="Start at value (JSON)")
    listen_parser.add_argument("-d", "--duration", type=float, default=None, help="Stop after N seconds")
    listen_parser.add_argument("--metrics-port", type=int, default=None, help="Serve Prometheus metrics on this port")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    setup_logging(args.debug or config.log_level.upper() == "DEBUG", config.log_format)

    if args.command == "get":
        asyncio.run(cmd_get(args, config))
    elif args.command == "server-time":
        asyncio.run(cmd_server_time(args, config))
    elif args.command == "listen":
        asyncio.run(cmd_listen(args, config))
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
