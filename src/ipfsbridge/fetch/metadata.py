"""Credential metadata lookup and the verify step that precedes a download."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ipfsbridge.core.exceptions import (
    InvalidContentIdError,
    MetadataLookupError,
    format_error_for_user,
)
from ipfsbridge.fetch.relays import gateway_target_url

logger = structlog.get_logger()

# Anchoring on chain is asserted by the issuer, not recomputed here.
BLOCKCHAIN_ASSERTION = "Verified from IPFS"


class CredentialMetadata(BaseModel):
    """Metadata document pinned next to a credential image.

    Accepts the camelCase keys the issuer writes (``imageHash``,
    ``originalFileName``) as well as snake_case.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    credential_type: str | None = None
    institution: str | None = None
    issue_date: str | None = None
    student_name: str | None = None
    student_address: str | None = None
    issuer_address: str | None = None
    image_hash: str | None = None
    original_file_name: str | None = None


@dataclass
class VerificationResult:
    content_id: str
    metadata: CredentialMetadata
    verified_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    blockchain_hash: str = BLOCKCHAIN_ASSERTION

    def to_display_dict(self) -> dict[str, Any]:
        return {
            "Credential Type": self.metadata.credential_type,
            "Institution": self.metadata.institution,
            "Issue Date": self.metadata.issue_date,
            "Student Name": self.metadata.student_name,
            "Student Address": self.metadata.student_address,
            "Issuer Address": self.metadata.issuer_address,
            "Blockchain Hash": self.blockchain_hash,
            "Verification Time": self.verified_at.isoformat(timespec="seconds"),
        }


class MetadataLookup(Protocol):
    async def lookup(self, content_id: str) -> CredentialMetadata | None: ...


class GatewayMetadataLookup:
    """Resolves a metadata CID by fetching its JSON from the public gateway."""

    def __init__(
        self,
        gateway_host: str,
        gateway_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.gateway_host = gateway_host
        self._gateway_token = gateway_token
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def lookup(self, content_id: str) -> CredentialMetadata | None:
        url = gateway_target_url(self.gateway_host, content_id, self._gateway_token)
        response = await self._http_client.get(url, headers={"Accept": "application/json"})
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return CredentialMetadata.model_validate(response.json())

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()


def validate_content_id(content_id: str, prefix: str = "bafk") -> str:
    """Return the stripped identifier, or raise before anything touches the network."""
    content_id = (content_id or "").strip()
    if not content_id.startswith(prefix):
        raise InvalidContentIdError(content_id, prefix)
    return content_id


async def verify_credential(
    content_id: str,
    lookup: MetadataLookup,
    prefix: str = "bafk",
) -> VerificationResult:
    """Validate ``content_id``, resolve its metadata and stamp the result.

    Raises:
        InvalidContentIdError: The identifier has the wrong prefix.
        MetadataLookupError: The lookup failed or found nothing.
    """
    content_id = validate_content_id(content_id, prefix)
    logger.info("Fetching metadata", content_id=content_id)

    try:
        metadata = await lookup.lookup(content_id)
    except MetadataLookupError:
        raise
    except (httpx.HTTPError, ValueError) as e:
        logger.error("Metadata lookup failed", content_id=content_id, error=str(e))
        raise MetadataLookupError(content_id, format_error_for_user(e)) from e

    if metadata is None:
        raise MetadataLookupError(content_id, "No metadata found")

    # Images may be pinned as raw (bafk) or dag-pb (bafy) CIDs.
    if not (metadata.image_hash or "").startswith("baf"):
        logger.warning("Image hash format unexpected", image_hash=metadata.image_hash)

    return VerificationResult(content_id=content_id, metadata=metadata)
