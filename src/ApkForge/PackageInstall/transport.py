# === NAVMAP v1 ===
# {
#   "module": "ApkForge.PackageInstall.transport",
#   "purpose": "Scheme-dispatched package fetching with retries and byte-range resume",
#   "sections": [
#     {"id": "create-http-client", "name": "create_http_client", "anchor": "function-create-http-client", "kind": "function"},
#     {"id": "create-retry-policy", "name": "create_retry_policy", "anchor": "function-create-retry-policy", "kind": "function"},
#     {"id": "rangeresumereader", "name": "RangeResumeReader", "anchor": "class-rangeresumereader", "kind": "class"},
#     {"id": "packagefetcher", "name": "PackageFetcher", "anchor": "class-packagefetcher", "kind": "class"}
#   ]
# }
# === /NAVMAP ===

"""Fetch transport for package archives and repository indexes.

Local paths and ``file://`` URLs are opened directly.  HTTP(S) sources are
requested through a shared :class:`httpx.Client`; the initial request is
retried with Tenacity (connect errors, timeouts, 429/5xx), and the streamed
body is wrapped in :class:`RangeResumeReader`, which re-issues the request
with a ``Range`` header when a read fails part way through a large archive.

Every read checks the batch :class:`CancellationToken` so a cancelled batch
aborts in-flight downloads instead of letting them run to completion.
"""

from __future__ import annotations

import io
import logging
import ssl
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import unquote, urlparse

import certifi
import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from .cancellation import CancellationToken
from .errors import CancelledError, FetchError
from .settings import HttpSettings, RetrySettings

logger = logging.getLogger(__name__)

__all__ = [
    "create_http_client",
    "create_retry_policy",
    "RangeResumeReader",
    "PackageFetcher",
    "is_retryable_error",
]

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}
_READ_ERRORS = (httpx.ReadError, httpx.ReadTimeout, httpx.RemoteProtocolError)
# Range offsets count body bytes, so bodies must arrive unencoded.
_IDENTITY = {"Accept-Encoding": "identity"}


def _create_ssl_context(settings: HttpSettings) -> ssl.SSLContext:
    if not settings.verify_tls:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        logger.warning("TLS verification DISABLED")
        return ctx
    ctx = ssl.create_default_context(cafile=certifi.where())
    ctx.check_hostname = True
    ctx.verify_mode = ssl.CERT_REQUIRED
    return ctx


def create_http_client(
    settings: Optional[HttpSettings] = None,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> httpx.Client:
    """Create the HTTPX client used for package and index downloads.

    Args:
        settings: Timeouts, pool limits, and TLS options.
        transport: Optional transport override (``httpx.MockTransport`` in tests).
    """

    settings = settings or HttpSettings()
    ssl_ctx = _create_ssl_context(settings)
    if transport is None:
        transport = httpx.HTTPTransport(retries=1, verify=ssl_ctx, trust_env=settings.trust_env)
    return httpx.Client(
        transport=transport,
        timeout=httpx.Timeout(
            connect=settings.timeout_connect,
            read=settings.timeout_read,
            write=settings.timeout_write,
            pool=settings.timeout_pool,
        ),
        limits=httpx.Limits(
            max_connections=settings.pool_max_connections,
            max_keepalive_connections=settings.pool_keepalive_max,
        ),
        headers={"User-Agent": settings.user_agent},
        follow_redirects=True,
        trust_env=settings.trust_env,
        verify=ssl_ctx,
    )


def is_retryable_error(exc: BaseException) -> bool:
    """Return ``True`` for transport failures and HTTP statuses worth retrying."""

    if isinstance(exc, CancelledError):
        return False
    if isinstance(exc, FetchError):
        return exc.retryable
    return isinstance(exc, (httpx.TransportError,))


def create_retry_policy(settings: Optional[RetrySettings] = None, *, sleep=None) -> Retrying:
    """Create the Tenacity policy wrapped around the initial request of a fetch."""

    settings = settings or RetrySettings()
    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return Retrying(
        stop=stop_after_attempt(settings.max_attempts),
        wait=wait_random_exponential(multiplier=settings.backoff_base, max=settings.backoff_max),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
        **kwargs,
    )


class RangeResumeReader(io.RawIOBase):
    """Readable body that resumes with ``Range`` requests after read errors.

    The reader owns the current response.  When iterating its body raises a
    read error, the response is closed and the same URL is requested again
    starting at the number of bytes already delivered.  A server that ignores
    the range (answers 200 instead of 206) cannot be resumed safely, so that
    ends the read with :class:`FetchError`.
    """

    def __init__(
        self,
        client: httpx.Client,
        url: str,
        response: httpx.Response,
        *,
        max_resumes: int = 5,
        token: Optional[CancellationToken] = None,
        package: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._client = client
        self._url = url
        self._response: Optional[httpx.Response] = response
        # Unchunked: a chunker would hold back bytes already received when a read fails.
        self._chunks = response.iter_bytes()
        self._buffer = b""
        self._offset = 0
        self._max_resumes = max_resumes
        self._resumes = 0
        self._token = token
        self._package = package
        self._eof = False

    @property
    def resumes(self) -> int:
        return self._resumes

    def readable(self) -> bool:
        return True

    def _resume(self, cause: BaseException) -> None:
        if self._resumes >= self._max_resumes:
            raise FetchError(
                f"reading {self._url} failed after {self._resumes} range resumes: {cause}",
                package=self._package,
            ) from cause
        self._resumes += 1
        self._close_response()
        logger.warning(
            "resuming download with range request",
            extra={"stage": "fetch", "url": self._url, "offset": self._offset, "attempt": self._resumes},
        )
        headers = {**_IDENTITY, "Range": f"bytes={self._offset}-"}
        request = self._client.build_request("GET", self._url, headers=headers)
        try:
            response = self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            raise FetchError(f"resuming {self._url}: {exc}", package=self._package, retryable=True) from exc
        if response.status_code != 206:
            response.close()
            raise FetchError(
                f"resuming {self._url} at byte {self._offset}: server answered {response.status_code}",
                package=self._package,
                status_code=response.status_code,
            )
        self._response = response
        self._chunks = response.iter_bytes()

    def _next_chunk(self) -> bytes:
        while True:
            if self._token is not None:
                self._token.raise_if_cancelled(f"fetching {self._url}")
            try:
                return next(self._chunks)
            except StopIteration:
                return b""
            except _READ_ERRORS as exc:
                self._resume(exc)
            except httpx.HTTPError as exc:
                self._close_response()
                raise FetchError(f"reading {self._url}: {exc}", package=self._package) from exc

    def readinto(self, buffer) -> int:
        if self._eof:
            return 0
        while not self._buffer:
            chunk = self._next_chunk()
            if not chunk:
                self._eof = True
                self._close_response()
                return 0
            self._buffer = chunk
        size = min(len(buffer), len(self._buffer))
        buffer[:size] = self._buffer[:size]
        self._buffer = self._buffer[size:]
        self._offset += size
        return size

    def _close_response(self) -> None:
        if self._response is not None:
            self._response.close()
            self._response = None

    def close(self) -> None:
        self._close_response()
        super().close()


def _local_path(url: str) -> Optional[Path]:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if not parsed.scheme:
        return Path(url)
    return None


class PackageFetcher:
    """Open package archives and index documents by URL.

    The fetcher owns its HTTP client unless one is supplied; use it as a
    context manager or call :meth:`close` at the end of a run.
    """

    def __init__(
        self,
        client: Optional[httpx.Client] = None,
        *,
        http_settings: Optional[HttpSettings] = None,
        retry_settings: Optional[RetrySettings] = None,
        retry_sleep=None,
    ) -> None:
        self._owns_client = client is None
        self._client = client if client is not None else create_http_client(http_settings)
        self._retry_settings = retry_settings or RetrySettings()
        self._retry_sleep = retry_sleep

    @property
    def client(self) -> httpx.Client:
        return self._client

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "PackageFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _open_response(self, url: str, token: Optional[CancellationToken], package: Optional[str]) -> httpx.Response:
        def _attempt() -> httpx.Response:
            if token is not None:
                token.raise_if_cancelled(f"fetching {url}")
            request = self._client.build_request("GET", url, headers=_IDENTITY)
            response = self._client.send(request, stream=True)
            if response.status_code != 200:
                response.close()
                raise FetchError(
                    f"unable to get {url}: {response.status_code} {response.reason_phrase}",
                    package=package,
                    status_code=response.status_code,
                    retryable=response.status_code in _RETRYABLE_STATUS,
                )
            return response

        policy = create_retry_policy(self._retry_settings, sleep=self._retry_sleep)
        try:
            return policy(_attempt)
        except httpx.TransportError as exc:
            raise FetchError(f"unable to get {url}: {exc}", package=package, retryable=True) from exc

    def fetch(
        self,
        url: str,
        token: Optional[CancellationToken] = None,
        *,
        package: Optional[str] = None,
    ) -> BinaryIO:
        """Return a readable stream over the archive at ``url``.

        Raises:
            FetchError: If the file cannot be opened, the scheme is not
                supported, or the HTTP request fails after retries.
        """

        logger.debug("fetching", extra={"stage": "fetch", "url": url, "package": package})
        local = _local_path(url)
        if local is not None:
            try:
                return local.open("rb")
            except OSError as exc:
                raise FetchError(f"failed to read package {url}: {exc}", package=package) from exc

        scheme = urlparse(url).scheme
        if scheme not in ("http", "https"):
            raise FetchError(f"repository scheme {scheme} not supported", package=package)

        response = self._open_response(url, token, package)
        reader = RangeResumeReader(
            self._client,
            url,
            response,
            max_resumes=self._retry_settings.range_resume_attempts,
            token=token,
            package=package,
        )
        return io.BufferedReader(reader, buffer_size=1 << 16)

    def fetch_bytes(self, url: str, token: Optional[CancellationToken] = None) -> bytes:
        """Read the whole document at ``url`` into memory (indexes, key files)."""

        with self.fetch(url, token) as stream:
            return stream.read()
