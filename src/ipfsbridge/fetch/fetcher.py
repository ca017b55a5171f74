"""Downloading one content-addressed object through a chain of relays."""

from __future__ import annotations

import asyncio
import contextlib
import functools
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog

from ipfsbridge.core.clock import Clock, LoopClock, TimerHandle
from ipfsbridge.core.config import FetchConfig
from ipfsbridge.core.exceptions import (
    InvalidContentIdError,
    RelayAttemptError,
    RelayExhaustedError,
    RelayStatusError,
    RelayTimeoutError,
)
from ipfsbridge.fetch.materialize import (
    DownloadTrigger,
    FileMaterializer,
    Materializer,
    StagedPayload,
)
from ipfsbridge.fetch.metadata import CredentialMetadata, VerificationResult
from ipfsbridge.fetch.relays import (
    DEFAULT_RELAY_ENDPOINTS,
    RelayEndpoint,
    gateway_target_url,
    parse_relays,
)
from ipfsbridge.observability.metrics import RELAY_ATTEMPTS

logger = structlog.get_logger()

ACCEPT = "image/jpeg, image/png, image/*, application/octet-stream"

# Checked in order against the declared content type.
_EXTENSIONS = (
    ("jpeg", "jpg"),
    ("jpg", "jpg"),
    ("png", "png"),
    ("pdf", "pdf"),
)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9]")


def choose_extension(content_type: str | None, original_filename: str | None = None) -> str:
    content_type = (content_type or "").lower()
    for marker, extension in _EXTENSIONS:
        if marker in content_type:
            return extension
    if original_filename and "." in original_filename:
        return original_filename.rsplit(".", 1)[-1]
    return "file"


def build_filename(metadata: CredentialMetadata, extension: str) -> str:
    """Original file name when known, else ``institution_type_student.ext``."""
    if metadata.original_file_name:
        return metadata.original_file_name
    stem = "_".join(
        str(part)
        for part in (metadata.institution, metadata.credential_type, metadata.student_name)
    )
    return f"{_UNSAFE_NAME_CHARS.sub('_', stem).lower()}.{extension}"


@dataclass
class DownloadResult:
    content_id: str
    relay: str
    path: Path
    filename: str
    content_type: str | None
    size: int
    attempts: int


class DownloadAttempt:
    """One relay try: its cancellation timer, byte sink and cleanup duties."""

    def __init__(self, relay: RelayEndpoint, url: str) -> None:
        self.relay = relay
        self.url = url
        self.timer: TimerHandle | None = None
        self.timed_out = False
        self.staged: StagedPayload | None = None
        self.trigger: DownloadTrigger | None = None
        self.released = False

    @property
    def holds_resources(self) -> bool:
        return not self.released and (self.staged is not None or self.trigger is not None)

    def expire(self, task: asyncio.Task) -> None:
        """Timer callback: abort the transfer itself, not just the wait."""
        self.timed_out = True
        task.cancel()

    def release(self, materializer: Materializer) -> bool:
        """Release staged bytes and the reserved name. Runs at most once."""
        if self.released:
            return False
        self.released = True
        if self.timer is not None:
            self.timer.cancel()
        if self.staged is not None:
            materializer.release(self.staged)
        if self.trigger is not None:
            materializer.unbind(self.trigger)
        return True


class FallbackFetcher:
    """Fetches one object by trying relays strictly in order.

    Each attempt runs in its own task under a timer that cancels it if the
    relay has not responded in time; the first success wins and later relays
    are never contacted. Failed attempts are cleaned up immediately. The final
    cleanup is deferred by ``cleanup_delay`` after the decision so a consumer
    of the materialized file is never raced.
    """

    def __init__(
        self,
        gateway_host: str,
        relays: Sequence[RelayEndpoint] = DEFAULT_RELAY_ENDPOINTS,
        gateway_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        materializer: Materializer | None = None,
        clock: Clock | None = None,
        attempt_timeout: float = 10.0,
        cleanup_delay: float = 1.5,
    ) -> None:
        if not relays:
            raise ValueError("At least one relay is required")
        self.gateway_host = gateway_host
        self.relays = tuple(relays)
        self.attempt_timeout = attempt_timeout
        self.cleanup_delay = cleanup_delay
        self._gateway_token = gateway_token
        # The attempt timer bounds the wait for a response and the body is unbounded,
        # so httpx gets no timeout of its own.
        self._http_client = http_client or httpx.AsyncClient(timeout=None, follow_redirects=True)
        self._owns_client = http_client is None
        self._materializer = materializer or FileMaterializer()
        self._clock = clock or LoopClock()
        self._pending_cleanups = 0

    @classmethod
    def from_config(cls, config: FetchConfig, **kwargs) -> FallbackFetcher:
        kwargs.setdefault("materializer", FileMaterializer(config.download_dir))
        return cls(
            gateway_host=config.gateway_host,
            relays=parse_relays(config.get_relays()),
            gateway_token=config.gateway_token,
            attempt_timeout=config.attempt_timeout,
            cleanup_delay=config.cleanup_delay,
            **kwargs,
        )

    @property
    def pending_cleanups(self) -> int:
        """Deferred cleanups scheduled but not yet run."""
        return self._pending_cleanups

    async def download_credential(self, verification: VerificationResult) -> DownloadResult:
        """Download the image referenced by a verified credential."""
        return await self.download(verification.metadata.image_hash or "", verification.metadata)

    async def download(
        self,
        content_id: str,
        metadata: CredentialMetadata | None = None,
    ) -> DownloadResult:
        """Fetch ``content_id`` and materialize it as a local file.

        Raises:
            InvalidContentIdError: ``content_id`` is empty.
            RelayExhaustedError: Every relay failed; the last failure is attached.
        """
        content_id = (content_id or "").strip()
        if not content_id:
            raise InvalidContentIdError(content_id, "baf")
        metadata = metadata or CredentialMetadata()
        target = gateway_target_url(self.gateway_host, content_id, self._gateway_token)

        attempts: list[DownloadAttempt] = []
        last_error: BaseException | None = None
        try:
            for relay in self.relays:
                attempt = DownloadAttempt(relay, relay.wrap(target))
                attempts.append(attempt)
                try:
                    result = await self._run_attempt(attempt, content_id, metadata)
                except (RelayAttemptError, httpx.HTTPError, httpx.StreamError, OSError) as e:
                    last_error = e
                    attempt.release(self._materializer)
                    RELAY_ATTEMPTS.labels(relay=relay.name, outcome=_outcome(e)).inc()
                    logger.warning(
                        "Download failed with relay",
                        relay=relay.name,
                        error=str(e) or type(e).__name__,
                    )
                    continue

                RELAY_ATTEMPTS.labels(relay=relay.name, outcome="success").inc()
                logger.info(
                    "Download complete",
                    content_id=content_id,
                    relay=relay.name,
                    path=str(result.path),
                    size=result.size,
                )
                result.attempts = len(attempts)
                return result

            logger.error(
                "All download attempts failed",
                content_id=content_id,
                attempts=len(attempts),
                error=str(last_error),
            )
            raise RelayExhaustedError(len(attempts), last_error) from last_error
        finally:
            self._pending_cleanups += 1
            self._clock.call_later(
                self.cleanup_delay, functools.partial(self._finalize, attempts)
            )

    async def _run_attempt(
        self,
        attempt: DownloadAttempt,
        content_id: str,
        metadata: CredentialMetadata,
    ) -> DownloadResult:
        task = asyncio.create_task(self._transfer(attempt, content_id, metadata))
        attempt.timer = self._clock.call_later(
            self.attempt_timeout, functools.partial(attempt.expire, task)
        )
        try:
            return await task
        except asyncio.CancelledError:
            if attempt.timed_out:
                raise RelayTimeoutError(attempt.relay.name, self.attempt_timeout) from None
            raise
        finally:
            attempt.timer.cancel()
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _transfer(
        self,
        attempt: DownloadAttempt,
        content_id: str,
        metadata: CredentialMetadata,
    ) -> DownloadResult:
        logger.debug("Trying relay", relay=attempt.relay.name)
        async with self._http_client.stream(
            "GET", attempt.url, headers={"Accept": ACCEPT}
        ) as response:
            if not response.is_success:
                raise RelayStatusError(attempt.relay.name, response.status_code)

            # The timer bounds the wait for a response; a large body may take longer.
            if attempt.timer is not None:
                attempt.timer.cancel()

            content_type = response.headers.get("content-type")
            logger.debug("Content type", relay=attempt.relay.name, content_type=content_type)

            attempt.staged = self._materializer.stage()
            async for chunk in response.aiter_bytes():
                attempt.staged.write(chunk)

        if attempt.staged.size == 0:
            raise RelayAttemptError(attempt.relay.name, "Empty response body")

        extension = choose_extension(content_type, metadata.original_file_name)
        filename = build_filename(metadata, extension)
        attempt.trigger = self._materializer.bind(attempt.staged, filename)
        path = attempt.trigger.fire()

        return DownloadResult(
            content_id=content_id,
            relay=attempt.relay.name,
            path=path,
            filename=path.name,
            content_type=content_type,
            size=attempt.staged.size,
            attempts=0,
        )

    def _finalize(self, attempts: list[DownloadAttempt]) -> None:
        """Deferred cleanup after the decision point."""
        self._pending_cleanups -= 1
        released = sum(1 for attempt in attempts if attempt.release(self._materializer))
        logger.debug("Download resources released", attempts=len(attempts), released=released)

    async def aclose(self) -> None:
        if self._owns_client:
            with contextlib.suppress(Exception):
                await self._http_client.aclose()


def _outcome(error: BaseException) -> str:
    if isinstance(error, RelayTimeoutError):
        return "timeout"
    if isinstance(error, RelayStatusError):
        return "status"
    return "error"
