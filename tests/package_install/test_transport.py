"""Tests for scheme dispatch, retries, and byte-range resume in the fetch transport."""

import threading

import httpx
import pytest

from ApkForge.PackageInstall.cancellation import CancellationToken
from ApkForge.PackageInstall.errors import CancelledError, FetchError
from ApkForge.PackageInstall.settings import RetrySettings
from ApkForge.PackageInstall.transport import PackageFetcher, is_retryable_error

URL = "https://repo.test/main/x86_64/blob.apk"
PAYLOAD = bytes(range(256)) * 1024


def test_fetch_reads_whole_body(mock_repository, http_fetcher) -> None:
    mock_repository.serve(URL, PAYLOAD)

    with http_fetcher.fetch(URL) as stream:
        assert stream.read() == PAYLOAD


def test_read_error_resumes_with_range_request(mock_repository, http_fetcher) -> None:
    mock_repository.serve(URL, PAYLOAD)
    mock_repository.break_after[URL] = 1000

    data = http_fetcher.fetch_bytes(URL)

    assert data == PAYLOAD
    ranges = [r.headers.get("Range") for r in mock_repository.requests]
    assert ranges == [None, "bytes=1000-"]


def test_resume_rejected_when_server_ignores_range() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if "Range" in request.headers:
            return httpx.Response(200, content=PAYLOAD)

        class _Broken(httpx.SyncByteStream):
            def __iter__(self):
                yield PAYLOAD[:10]
                raise httpx.ReadError("reset")

        return httpx.Response(200, stream=_Broken())

    client = httpx.Client(transport=httpx.MockTransport(handler))
    fetcher = PackageFetcher(client, retry_sleep=lambda _s: None)

    with pytest.raises(FetchError, match="answered 200"):
        fetcher.fetch_bytes(URL)


def test_transient_status_is_retried(mock_repository, http_fetcher) -> None:
    mock_repository.serve(URL, PAYLOAD)
    mock_repository.failures[URL] = [503, 502]

    assert http_fetcher.fetch_bytes(URL) == PAYLOAD
    assert mock_repository.hits(URL) == 3


def test_retries_are_bounded(mock_repository, http_fetcher) -> None:
    mock_repository.serve(URL, PAYLOAD)
    mock_repository.failures[URL] = [503, 503, 503, 503]

    with pytest.raises(FetchError) as excinfo:
        http_fetcher.fetch_bytes(URL)
    assert excinfo.value.status_code == 503
    assert mock_repository.hits(URL) == 3


def test_not_found_is_not_retried(mock_repository, http_fetcher) -> None:
    with pytest.raises(FetchError, match="404"):
        http_fetcher.fetch(URL, package="blob")
    assert mock_repository.hits(URL) == 1


def test_transport_errors_become_fetch_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    fetcher = PackageFetcher(client, retry_settings=RetrySettings(max_attempts=2), retry_sleep=lambda _s: None)

    with pytest.raises(FetchError, match="refused") as excinfo:
        fetcher.fetch(URL)
    assert excinfo.value.retryable


def test_local_paths_and_file_urls(tmp_path, local_fetcher) -> None:
    target = tmp_path / "pkg.apk"
    target.write_bytes(b"local bytes")

    with local_fetcher.fetch(str(target)) as stream:
        assert stream.read() == b"local bytes"
    with local_fetcher.fetch(target.as_uri()) as stream:
        assert stream.read() == b"local bytes"


def test_unsupported_scheme(local_fetcher) -> None:
    with pytest.raises(FetchError, match="scheme ftp not supported"):
        local_fetcher.fetch("ftp://mirror.test/pkg.apk")


def test_cancelled_token_aborts_body_reads(mock_repository, http_fetcher) -> None:
    mock_repository.serve(URL, PAYLOAD)
    token = CancellationToken()
    stream = http_fetcher.fetch(URL, token)
    token.cancel(RuntimeError("sibling failed"))

    with pytest.raises(CancelledError, match="sibling failed"):
        stream.read()
    stream.close()


def test_cancelled_token_prevents_request(mock_repository, http_fetcher) -> None:
    mock_repository.serve(URL, PAYLOAD)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CancelledError):
        http_fetcher.fetch(URL, token)
    assert mock_repository.hits(URL) == 0


def test_is_retryable_error_classification() -> None:
    assert is_retryable_error(FetchError("x", retryable=True))
    assert not is_retryable_error(FetchError("x", status_code=404))
    assert not is_retryable_error(CancelledError("x"))
    assert is_retryable_error(httpx.ReadTimeout("slow"))
    assert not is_retryable_error(ValueError("x"))


def test_fetcher_is_safe_to_share_between_threads(mock_repository, http_fetcher) -> None:
    urls = [f"https://repo.test/main/x86_64/{i}.apk" for i in range(8)]
    for i, url in enumerate(urls):
        mock_repository.serve(url, bytes([i]) * 4096)
    results = {}

    def fetch(url: str) -> None:
        results[url] = http_fetcher.fetch_bytes(url)

    threads = [threading.Thread(target=fetch, args=(url,)) for url in urls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    assert all(results[url] == bytes([i]) * 4096 for i, url in enumerate(urls))


def test_requests_ask_for_unencoded_bodies(mock_repository, http_fetcher) -> None:
    mock_repository.serve(URL, PAYLOAD)
    mock_repository.break_after[URL] = 4096

    assert http_fetcher.fetch_bytes(URL) == PAYLOAD
    encodings = [r.headers.get("Accept-Encoding") for r in mock_repository.requests]
    assert encodings == ["identity", "identity"]


def test_body_errors_become_fetch_errors() -> None:
    class _Undecodable(httpx.SyncByteStream):
        def __iter__(self):
            yield PAYLOAD[:10]
            raise httpx.DecodingError("bad chunk")

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, stream=_Undecodable())

    client = httpx.Client(transport=httpx.MockTransport(handler))
    fetcher = PackageFetcher(client, retry_sleep=lambda _s: None)

    with pytest.raises(FetchError, match="bad chunk") as excinfo:
        fetcher.fetch_bytes(URL)
    assert isinstance(excinfo.value.__cause__, httpx.DecodingError)
