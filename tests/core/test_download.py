"""
Unit tests for download module.

Tests retry behavior and digest verification with mocked network requests.
"""

import errno
import hashlib
from itertools import chain, count, repeat
from unittest.mock import patch

import pytest
import responses
from requests.exceptions import ConnectionError

from crossprov.core.download import (
    CHUNK_SIZE,
    ChecksumError,
    RetryPolicy,
    StreamingHasher,
    TransferTimeout,
    download_file,
    format_size,
    validate_url,
)
from crossprov.core.exceptions import (
    FetchExhausted,
    InvalidLocator,
    ProvisionTimeout,
    WriteFailure,
)

URL = "https://example.com/artifacts/cctools.tar.zst"


class TestRetryPolicy:
    """Test RetryPolicy dataclass."""

    def test_defaults_match_curl_retry_five(self):
        """Default is one attempt plus five retries, ten seconds apart."""
        policy = RetryPolicy()
        assert policy.max_attempts == 6
        assert policy.delay_seconds == 10.0

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)

    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError, match="delay_seconds"):
            RetryPolicy(delay_seconds=-1)

    def test_zero_timeout_rejected(self):
        with pytest.raises(ValueError, match="timeout_seconds"):
            RetryPolicy(timeout_seconds=0)


class TestStreamingHasher:
    """Test StreamingHasher class."""

    def test_sha512(self):
        hasher = StreamingHasher("sha512")
        hasher.update(b"hello ")
        hasher.update(b"world")
        assert hasher.finalize() == hashlib.sha512(b"hello world").hexdigest()

    def test_unsupported_algorithm(self):
        with pytest.raises(ValueError, match="Unsupported hash algorithm"):
            StreamingHasher("md5")

    def test_case_insensitive_verify(self):
        hasher = StreamingHasher("sha256")
        hasher.update(b"test")
        assert hasher.verify(hashlib.sha256(b"test").hexdigest().upper()) is True


class TestValidateUrl:
    """Test validate_url function."""

    @pytest.mark.parametrize(
        "url",
        ["", "ftp://example.com/a.tar.xz", "example.com/a.tar.xz", "https://", "file:///tmp/a"],
    )
    def test_malformed_urls(self, url):
        with pytest.raises(InvalidLocator):
            validate_url(url, "clang")

    def test_error_names_artifact(self):
        with pytest.raises(InvalidLocator, match=r"\[clang\] fetch"):
            validate_url("ftp://example.com/x", "clang")

    def test_valid_url(self):
        validate_url(URL)


class TestDownloadFile:
    """Test download_file function."""

    @responses.activate
    def test_simple_download(self, tmp_path):
        """Test simple download without checksum."""
        content = b"archive bytes"
        destination = tmp_path / "out" / "cctools.tar.zst"
        responses.add(responses.GET, URL, body=content, status=200)

        result = download_file(URL, destination)

        assert result == destination
        assert destination.read_bytes() == content
        assert len(responses.calls) == 1

    @responses.activate
    def test_succeeds_on_last_allowed_attempt(self, tmp_path, no_sleep):
        """N-1 failures then success: exactly N requests, N-1 delays."""
        policy = RetryPolicy(max_attempts=4, delay_seconds=10)
        for _ in range(3):
            responses.add(responses.GET, URL, body=ConnectionError("connection reset"))
        responses.add(responses.GET, URL, body=b"payload", status=200)

        result = download_file(URL, tmp_path / "a", policy=policy)

        assert result.read_bytes() == b"payload"
        assert len(responses.calls) == 4
        assert no_sleep.call_count == 3
        no_sleep.assert_called_with(10)

    @responses.activate
    def test_no_extra_attempt_after_success(self, tmp_path, no_sleep):
        policy = RetryPolicy(max_attempts=5, delay_seconds=1)
        responses.add(responses.GET, URL, status=503)
        responses.add(responses.GET, URL, body=b"payload", status=200)

        download_file(URL, tmp_path / "a", policy=policy)

        assert len(responses.calls) == 2
        assert no_sleep.call_count == 1

    @responses.activate
    def test_exhaustion_after_exact_attempt_count(self, tmp_path, no_sleep):
        policy = RetryPolicy(max_attempts=3, delay_seconds=2)
        responses.add(responses.GET, URL, status=500)

        with pytest.raises(FetchExhausted) as exc_info:
            download_file(URL, tmp_path / "a", policy=policy, artifact="cctools")

        assert len(responses.calls) == 3
        assert exc_info.value.attempts == 3
        assert exc_info.value.artifact == "cctools"
        # No delay after the final attempt
        assert no_sleep.call_count == 2

    @responses.activate
    def test_checksum_mismatch_is_retried(self, tmp_path):
        policy = RetryPolicy(max_attempts=2, delay_seconds=0)
        responses.add(responses.GET, URL, body=b"corrupted", status=200)
        responses.add(responses.GET, URL, body=b"payload", status=200)

        download_file(
            URL,
            tmp_path / "a",
            policy=policy,
            expected_digest=hashlib.sha256(b"payload").hexdigest(),
        )

        assert (tmp_path / "a").read_bytes() == b"payload"
        assert len(responses.calls) == 2

    @responses.activate
    def test_checksum_mismatch_exhausts(self, tmp_path):
        policy = RetryPolicy(max_attempts=2, delay_seconds=0)
        responses.add(responses.GET, URL, body=b"corrupted", status=200)

        with pytest.raises(FetchExhausted) as exc_info:
            download_file(URL, tmp_path / "a", policy=policy, expected_digest="a" * 64)

        assert isinstance(exc_info.value.__cause__, ChecksumError)

    @responses.activate
    def test_sha512_digest(self, tmp_path):
        content = b"sdk"
        responses.add(responses.GET, URL, body=content, status=200)

        download_file(
            URL,
            tmp_path / "sdk",
            expected_digest=hashlib.sha512(content).hexdigest(),
            algorithm="sha512",
        )

        assert (tmp_path / "sdk").read_bytes() == content

    def test_invalid_url_makes_no_request(self, tmp_path):
        with patch("crossprov.core.download.requests.get") as mock_get:
            with pytest.raises(InvalidLocator):
                download_file("not-a-url", tmp_path / "a")
        mock_get.assert_not_called()

    @responses.activate
    def test_deadline_stops_retries(self, tmp_path):
        policy = RetryPolicy(max_attempts=5, delay_seconds=1)
        responses.add(responses.GET, URL, status=500)

        with patch("crossprov.core.download.time.monotonic", side_effect=chain([0.0], repeat(50.0))):
            with pytest.raises(ProvisionTimeout):
                download_file(URL, tmp_path / "a", policy=policy, deadline=10.0)

        assert len(responses.calls) == 1


class TestTransferBudget:
    """Each attempt is bounded in wall-clock time, not only per socket read."""

    @responses.activate
    def test_slow_transfer_counts_as_failed_attempt(self, tmp_path, no_sleep):
        policy = RetryPolicy(max_attempts=2, delay_seconds=1, timeout_seconds=5)
        responses.add(responses.GET, URL, body=b"x" * 100)

        # Every clock reading is 10s after the previous one
        with patch("crossprov.core.download.time.monotonic", side_effect=count(0, 10)):
            with pytest.raises(FetchExhausted) as exc_info:
                download_file(URL, tmp_path / "a", policy=policy)

        assert len(responses.calls) == 2
        assert isinstance(exc_info.value.__cause__, TransferTimeout)
        assert no_sleep.call_count == 1

    @responses.activate
    def test_deadline_interrupts_running_transfer(self, tmp_path):
        policy = RetryPolicy(max_attempts=5, delay_seconds=1, timeout_seconds=300)
        responses.add(responses.GET, URL, body=b"x" * (CHUNK_SIZE * 4))

        with patch("crossprov.core.download.time.monotonic", side_effect=count(0, 10)):
            with pytest.raises(ProvisionTimeout, match="while downloading"):
                download_file(URL, tmp_path / "a", policy=policy, deadline=25.0)

        assert len(responses.calls) == 1

    @responses.activate
    def test_retry_delay_capped_by_deadline(self, tmp_path, no_sleep):
        policy = RetryPolicy(max_attempts=3, delay_seconds=60, timeout_seconds=30)
        responses.add(responses.GET, URL, status=503)
        responses.add(responses.GET, URL, body=b"ok")

        with patch(
            "crossprov.core.download.time.monotonic", side_effect=chain([0.0, 1.0, 2.0], repeat(3.0))
        ):
            download_file(URL, tmp_path / "a", policy=policy, deadline=20.0)

        no_sleep.assert_called_once_with(18.0)


class TestWriteErrors:
    """Local I/O errors are reported as WriteFailure, not retried."""

    @responses.activate
    def test_destination_is_directory(self, tmp_path):
        responses.add(responses.GET, URL, body=b"data")

        with pytest.raises(WriteFailure) as exc_info:
            download_file(URL, tmp_path, artifact="cctools")

        assert exc_info.value.artifact == "cctools"
        assert len(responses.calls) == 1

    @responses.activate
    def test_disk_full(self, tmp_path):
        responses.add(responses.GET, URL, body=b"data")
        error = OSError(errno.ENOSPC, "No space left on device")

        with patch("crossprov.core.download.open", side_effect=error, create=True):
            with pytest.raises(WriteFailure, match="No space left"):
                download_file(URL, tmp_path / "a", artifact="cctools")

        assert len(responses.calls) == 1

    def test_parent_not_creatable(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")

        with pytest.raises(WriteFailure):
            download_file(URL, blocker / "a.tar.zst")


class TestHelpers:
    """Test format_size."""

    def test_format_size(self):
        assert format_size(52428800) == "50.0 MB"
        assert format_size(2048) == "2.0 KB"
