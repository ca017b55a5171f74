"""Relay endpoints that wrap a target URL for cross-origin relaying."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import quote, urlencode, urlsplit

from ipfsbridge.core.config import DEFAULT_RELAYS

# Characters JavaScript's encodeURIComponent leaves alone.
_URI_COMPONENT_SAFE = "-_.!~*'()"


@dataclass(frozen=True)
class RelayEndpoint:
    """A relay URL template.

    Either a prefix the encoded target is appended to
    (``https://corsproxy.io/?``) or a template with a ``{url}`` placeholder.
    """

    template: str

    @property
    def name(self) -> str:
        return urlsplit(self.template).netloc or self.template

    def wrap(self, target: str) -> str:
        encoded = quote(target, safe=_URI_COMPONENT_SAFE)
        if "{url}" in self.template:
            return self.template.replace("{url}", encoded)
        return self.template + encoded


def parse_relays(templates: Iterable[str]) -> tuple[RelayEndpoint, ...]:
    return tuple(RelayEndpoint(t.strip()) for t in templates if t.strip())


DEFAULT_RELAY_ENDPOINTS = parse_relays(DEFAULT_RELAYS.split(","))


def gateway_target_url(gateway_host: str, content_id: str, token: str | None = None) -> str:
    """URL of ``content_id`` on the public gateway, with the access token if any."""
    host = gateway_host.removeprefix("https://").removeprefix("http://").rstrip("/")
    url = f"https://{host}/ipfs/{content_id}"
    if token:
        url += "?" + urlencode({"pinataGatewayToken": token})
    return url
