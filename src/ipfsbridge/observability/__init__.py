from ipfsbridge.observability.metrics import (
    GATEWAY_ERRORS,
    GATEWAY_REQUEST_DURATION,
    GATEWAY_REQUESTS,
    RELAY_ATTEMPTS,
    TUNNEL_RESTARTS,
    bucket_status,
    generate_metrics,
    get_content_type,
)

__all__ = [
    "GATEWAY_REQUESTS",
    "GATEWAY_ERRORS",
    "GATEWAY_REQUEST_DURATION",
    "TUNNEL_RESTARTS",
    "RELAY_ATTEMPTS",
    "bucket_status",
    "generate_metrics",
    "get_content_type",
]
