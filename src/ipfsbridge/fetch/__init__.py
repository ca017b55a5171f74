"""Relay fallback downloads of content-addressed objects."""

from ipfsbridge.fetch.fetcher import (
    DownloadAttempt,
    DownloadResult,
    FallbackFetcher,
    build_filename,
    choose_extension,
)
from ipfsbridge.fetch.materialize import (
    DownloadTrigger,
    FileMaterializer,
    Materializer,
    StagedPayload,
)
from ipfsbridge.fetch.metadata import (
    CredentialMetadata,
    GatewayMetadataLookup,
    MetadataLookup,
    VerificationResult,
    validate_content_id,
    verify_credential,
)
from ipfsbridge.fetch.relays import (
    DEFAULT_RELAY_ENDPOINTS,
    RelayEndpoint,
    gateway_target_url,
    parse_relays,
)

__all__ = [
    # Fetcher
    "FallbackFetcher",
    "DownloadAttempt",
    "DownloadResult",
    "build_filename",
    "choose_extension",
    # Materialization
    "Materializer",
    "FileMaterializer",
    "StagedPayload",
    "DownloadTrigger",
    # Metadata
    "CredentialMetadata",
    "MetadataLookup",
    "GatewayMetadataLookup",
    "VerificationResult",
    "validate_content_id",
    "verify_credential",
    # Relays
    "RelayEndpoint",
    "DEFAULT_RELAY_ENDPOINTS",
    "gateway_target_url",
    "parse_relays",
]
