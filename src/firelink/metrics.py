"""
Prometheus 指标模块

提供服务实例监控指标:
- 连接状态
- 活跃订阅数
- 会话初始化计数
- 回调错误计数
"""

import logging
from prometheus_client import Counter, Gauge, Info, generate_latest, CONTENT_TYPE_LATEST
from aiohttp import web

from . import __version__

logger = logging.getLogger(__name__)


# ============ 连接指标 ============
CONNECTION_STATUS = Gauge(
    'firelink_connection_status',
    'Service instance connection status (1=connected, 0=not connected)',
    ['instance']
)

SESSIONS_INITIALIZED = Counter(
    'firelink_sessions_initialized_total',
    'Total number of backend sessions initialized',
    ['backend']
)

# ============ 订阅指标 ============
ACTIVE_SUBSCRIPTIONS = Gauge(
    'firelink_active_subscriptions',
    'Number of attached listeners',
    ['instance']
)

CALLBACK_ERRORS = Counter(
    'firelink_callback_errors_total',
    'Total errors raised by listener callbacks',
    ['event_kind']
)

# ============ 系统信息 ============
SYSTEM_INFO = Info(
    'firelink',
    'Firelink connection manager information'
)

SYSTEM_INFO.info({
    'version': __version__,
})


def update_connection_status(instance: str, connected: bool) -> None:
    """更新连接状态"""
    CONNECTION_STATUS.labels(instance=instance).set(1 if connected else 0)


def update_subscription_count(instance: str, count: int) -> None:
    """更新活跃订阅数"""
    ACTIVE_SUBSCRIPTIONS.labels(instance=instance).set(count)


def remove_instance(instance: str) -> None:
    """移除已终止实例的指标序列"""
    for gauge in (CONNECTION_STATUS, ACTIVE_SUBSCRIPTIONS):
        try:
            gauge.remove(instance)
        except KeyError:
            pass


def record_session_initialized(backend: str) -> None:
    """记录会话初始化"""
    SESSIONS_INITIALIZED.labels(backend=backend).inc()


def record_callback_error(event_kind: str) -> None:
    """记录回调错误"""
    CALLBACK_ERRORS.labels(event_kind=event_kind or "unknown").inc()


# ============ HTTP 端点 ============

async def metrics_handler(request: web.Request) -> web.Response:
    """Prometheus metrics endpoint"""
    return web.Response(
        body=generate_latest(),
        headers={"Content-Type": CONTENT_TYPE_LATEST},
    )


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint"""
    return web.Response(text="OK", status=200)


def create_metrics_app() -> web.Application:
    """创建 metrics HTTP 应用"""
    app = web.Application()
    app.router.add_get('/metrics', metrics_handler)
    app.router.add_get('/health', health_handler)
    app.router.add_get('/healthz', health_handler)
    return app


async def start_metrics_server(host: str = "0.0.0.0", port: int = 8000) -> web.AppRunner:
    """启动 metrics 服务器"""
    app = create_metrics_app()
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Metrics server running at http://{host}:{port}/metrics")
    return runner
