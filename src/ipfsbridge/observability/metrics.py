from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

GATEWAY_REQUESTS = Counter(
    "ipfsbridge_gateway_requests_total",
    "Total requests handled by the gateway",
    ["method", "status"],
)

GATEWAY_ERRORS = Counter(
    "ipfsbridge_gateway_errors_total",
    "Gateway requests that failed to reach the upstream",
)

GATEWAY_REQUEST_DURATION = Histogram(
    "ipfsbridge_gateway_request_duration_seconds",
    "Gateway request latency",
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

TUNNEL_RESTARTS = Counter(
    "ipfsbridge_tunnel_restarts_total",
    "Tunnel helper restarts",
    ["reason"],  # reason: exit/error
)

RELAY_ATTEMPTS = Counter(
    "ipfsbridge_relay_attempts_total",
    "Relay download attempts",
    ["relay", "outcome"],  # outcome: success/status/timeout/error
)


def bucket_status(status: int) -> str:
    """Bucket HTTP status to prevent cardinality explosion."""
    if 100 <= status < 600:
        return f"{status // 100}xx"
    return "other"


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
