"""
Prometheus metrics for the execution core.

Collectors are module-level so every component increments the same series;
start_metrics_server() exposes them on /metrics for Grafana.
"""
from prometheus_client import Counter, Gauge, start_http_server
from loguru import logger

EXCHANGE_REQUESTS = Counter(
    "autotrader_exchange_requests_total",
    "Exchange calls by operation and outcome",
    ["operation", "outcome"],
)
EXCHANGE_RETRIES = Counter(
    "autotrader_exchange_retries_total",
    "Retries performed by the request layer",
    ["operation", "reason"],
)
REQUEST_QUEUE_DEPTH = Gauge(
    "autotrader_request_queue_depth",
    "Calls waiting in the serialized exchange queue",
)
MONITOR_TICKS = Counter(
    "autotrader_monitor_ticks_total",
    "Monitor ticks by outcome",
    ["outcome"],
)
OPEN_POSITIONS = Gauge(
    "autotrader_open_positions",
    "Positions currently open",
)
SIGNAL_EXECUTIONS = Counter(
    "autotrader_signal_executions_total",
    "Signals processed by outcome",
    ["outcome"],
)
POSITION_EXITS = Counter(
    "autotrader_position_exits_total",
    "Realised exits by close reason",
    ["reason"],
)
REALIZED_PNL = Gauge(
    "autotrader_realized_pnl",
    "Realised PnL in quote currency since process start",
)


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP."""
    start_http_server(port)
    logger.info(f"📈 Metrics server listening on :{port}/metrics")
