# observability/metrics.py
# Prometheus metrics for the connector, RPC layer, idle guard and reaper.

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# --- Connection metrics ---
connect_attempts_total = Counter(
    "mcw_connect_attempts_total",
    "Connection attempts to the management server"
)
connect_failures_total = Counter(
    "mcw_connect_failures_total",
    "Failed connection attempts by reason",
    ["reason"]  # reason=auth_rejected|refused|timeout|handshake|other
)
backoff_seconds = Histogram(
    "mcw_backoff_seconds",
    "Backoff sleeps chosen between connection attempts (s)",
    buckets=[1, 2, 4, 8, 16, 30, 60]
)
connected = Gauge(
    "mcw_connected",
    "1 while a management connection is live"
)
reconnects_total = Counter(
    "mcw_reconnects_total",
    "Reconnects after a lost connection"
)

# --- RPC metrics ---
rpc_calls_total = Counter(
    "mcw_rpc_calls_total",
    "JSON-RPC calls by method and outcome",
    ["method", "outcome"]  # outcome=ok|protocol_fault|transport_lost|timeout
)
rpc_unmatched_responses_total = Counter(
    "mcw_rpc_unmatched_responses_total",
    "Responses discarded because no pending call matched their id"
)

# --- Idle guard ---
players_online = Gauge(
    "mcw_players_online",
    "Players seen by the last successful poll"
)
uptime_seconds = Gauge(
    "mcw_uptime_seconds",
    "Seconds since the watcher started"
)
idle_seconds = Gauge(
    "mcw_idle_seconds",
    "Seconds since a player was last seen"
)
poll_errors_total = Counter(
    "mcw_poll_errors_total",
    "Polls that failed, by fault kind",
    ["kind"]  # kind=protocol_fault|transport_lost|timeout|malformed
)

# --- Reaper ---
shutdown_attempts_total = Counter(
    "mcw_shutdown_attempts_total",
    "Terminal action attempts",
    ["outcome", "mode"]  # outcome=ok|failed, mode=live|dry_run
)
reaper_trips_total = Counter(
    "mcw_reaper_trips_total",
    "Number of times the reaper was triggered",
    ["reason"]
)


def serve_metrics(port: int = 9100):
    """Expose /metrics on http://localhost:<port>/metrics"""
    start_http_server(port)
