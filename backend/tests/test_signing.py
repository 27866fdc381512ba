"""Tests for presigned URL generation and key extraction.

The round-trip tests use a real boto3 client with fake credentials:
presigning is pure computation, so nothing leaves the process.
"""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from atelier.utils import signing
from atelier.utils.r2 import R2Config, build_client
from atelier.utils.retry import RetryPolicy
from atelier.utils.signing import DISPLAY_TTL_SECONDS, DOWNLOAD_TTL_SECONDS, UrlSigner
from tests.helpers import DISABLED_CONFIG, TEST_CONFIG

PUBLIC_CONFIG = R2Config(
    account_id="acct123",
    access_key_id="AKIDTEST",
    secret_access_key="secret-test",
    bucket_name="atelier-test",
    public_url="https://cdn.example.com/assets",
)


@pytest.fixture
def signer(mock_s3):
    return UrlSigner(TEST_CONFIG, client=mock_s3)


class TestSign:
    """Tests for UrlSigner.sign()."""

    @pytest.mark.asyncio
    async def test_presigns_get_object(self, signer, mock_s3):
        """sign() presigns get_object for the configured bucket with the display TTL."""
        url = await signer.sign("designs/d/a.png")

        assert url.startswith("https://acct123.r2.cloudflarestorage.com/atelier-test/designs/d/a.png?")
        mock_s3.generate_presigned_url.assert_called_once_with(
            "get_object",
            Params={"Bucket": "atelier-test", "Key": "designs/d/a.png"},
            ExpiresIn=DISPLAY_TTL_SECONDS,
        )

    @pytest.mark.asyncio
    async def test_custom_ttl(self, signer, mock_s3):
        """The download window is passed through as ExpiresIn."""
        await signer.sign("k.png", DOWNLOAD_TTL_SECONDS)
        assert mock_s3.generate_presigned_url.call_args[1]["ExpiresIn"] == 7200

    @pytest.mark.asyncio
    async def test_client_error_returns_none(self, signer, mock_s3):
        """A boto error yields None and logs r2_presign_failed."""
        mock_s3.generate_presigned_url.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "nope"}}, "GetObject"
        )
        with patch.object(signing, "logger") as mock_logger:
            assert await signer.sign("designs/d/a.png") is None

        mock_logger.error.assert_called_once()
        assert mock_logger.error.call_args[0][0] == "r2_presign_failed"
        assert mock_logger.error.call_args[1]["key"] == "designs/d/a.png"

    @pytest.mark.asyncio
    async def test_unconfigured_returns_none(self):
        """Without credentials there is no client and every sign() is None."""
        signer = UrlSigner(DISABLED_CONFIG)
        assert not signer.available
        assert await signer.sign("designs/d/a.png") is None
        assert await signer.sign("anything") is None

    @pytest.mark.asyncio
    async def test_empty_key_returns_none(self, signer, mock_s3):
        """An empty key is never sent to boto3."""
        assert await signer.sign("") is None
        mock_s3.generate_presigned_url.assert_not_called()

    @pytest.mark.asyncio
    async def test_optional_retry_policy(self, mock_s3):
        """With a retry policy, a transient failure is retried."""
        mock_s3.generate_presigned_url.side_effect = [
            ClientError({"Error": {"Code": "500", "Message": "flaky"}}, "GetObject"),
            "https://acct123.r2.cloudflarestorage.com/atelier-test/k.png?sig",
        ]
        signer = UrlSigner(TEST_CONFIG, client=mock_s3, retry_policy=RetryPolicy(base_delay=0))

        assert await signer.sign("k.png") == "https://acct123.r2.cloudflarestorage.com/atelier-test/k.png?sig"
        assert mock_s3.generate_presigned_url.call_count == 2

    @pytest.mark.asyncio
    async def test_retry_exhaustion_returns_none(self, mock_s3):
        """Exhausted retries still degrade to None."""
        mock_s3.generate_presigned_url.side_effect = ClientError(
            {"Error": {"Code": "500", "Message": "down"}}, "GetObject"
        )
        signer = UrlSigner(
            TEST_CONFIG, client=mock_s3, retry_policy=RetryPolicy(max_attempts=2, base_delay=0)
        )
        assert await signer.sign("k.png") is None
        assert mock_s3.generate_presigned_url.call_count == 2

    @pytest.mark.asyncio
    async def test_default_is_single_attempt(self, signer, mock_s3):
        """Without a policy a failure is not retried."""
        mock_s3.generate_presigned_url.side_effect = ValueError("bad params")
        assert await signer.sign("k.png") is None
        assert mock_s3.generate_presigned_url.call_count == 1


class TestExtractKey:
    """Tests for UrlSigner.extract_key()."""

    @pytest.fixture
    def signer(self):
        return UrlSigner(PUBLIC_CONFIG, client=MagicMock())

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("designs/d/a.png", "designs/d/a.png"),
            ("/designs/d/a.png", "designs/d/a.png"),
            (
                "https://atelier-test.acct123.r2.cloudflarestorage.com/designs/d/a.png",
                "designs/d/a.png",
            ),
            (
                "https://acct123.r2.cloudflarestorage.com/atelier-test/designs/d/a.png"
                "?X-Amz-Expires=3600&X-Amz-Signature=abc",
                "designs/d/a.png",
            ),
            ("https://cdn.example.com/assets/designs/d/a.png", "designs/d/a.png"),
            (
                "https://atelier-test.acct123.r2.cloudflarestorage.com/designs/d/my%20room.png",
                "designs/d/my room.png",
            ),
        ],
    )
    def test_recovers_key(self, signer, url, expected):
        """Bare keys, virtual-host, path-style and public URLs all map to the key."""
        assert signer.extract_key(url) == expected

    @pytest.mark.parametrize(
        "url",
        [
            "",
            "   ",
            "data:image/png;base64,AAAA",
            "https://example.com/designs/d/a.png",
            "https://cdn.example.com/other/designs/d/a.png",
            "ftp://acct123.r2.cloudflarestorage.com/bkt/k.png",
            "https://atelier-test.acct123.r2.cloudflarestorage.com/",
            "https://acct123.r2.cloudflarestorage.com/atelier-test",
            "http://[::1",
        ],
    )
    def test_rejects_foreign_or_malformed(self, signer, url):
        """Anything that is not ours (or not parseable) is None, never an exception."""
        assert signer.extract_key(url) is None

    def test_non_string_input(self, signer):
        """Non-string input is tolerated."""
        assert signer.extract_key(None) is None  # type: ignore[arg-type]


class TestIsStorageUrl:
    """Tests for UrlSigner.is_storage_url()."""

    @pytest.fixture
    def signer(self):
        return UrlSigner(PUBLIC_CONFIG, client=MagicMock())

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            ("designs/d/a.png", True),
            ("https://atelier-test.acct123.r2.cloudflarestorage.com/designs/d/a.png", True),
            ("https://acct123.r2.cloudflarestorage.com/atelier-test/k.png?sig=1", True),
            ("https://cdn.example.com/assets/designs/d/a.png", True),
            ("https://images.unsplash.com/photo.png", False),
            ("data:image/png;base64,AAAA", False),
            ("", False),
        ],
    )
    def test_classifies(self, signer, url, expected):
        """Ours: bare keys, R2 hosts and the public host. Not ours: everything else."""
        assert signer.is_storage_url(url) is expected


class TestRoundTrip:
    """extract_key(sign(k, t)) == k."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "key",
        [
            "designs/d-1/output-abc_variation_0123456789.png",
            "designs/temp-xyz/output-1_main_aaaa.jpg",
            "designs/d/with space & plus+.webp",
        ],
    )
    async def test_real_boto3_presign(self, key):
        """A real (offline) boto3 presign changes the query, not the path-derived key."""
        signer = UrlSigner(TEST_CONFIG, client=build_client(TEST_CONFIG))

        for ttl in (DISPLAY_TTL_SECONDS, DOWNLOAD_TTL_SECONDS):
            url = await signer.sign(key, ttl)
            assert url is not None
            assert f"X-Amz-Expires={ttl}" in url
            assert signer.is_storage_url(url)
            assert signer.extract_key(url) == key

    @pytest.mark.asyncio
    async def test_path_style_mock(self, signer):
        """The path-style form (bucket as first segment) round-trips too."""
        url = await signer.sign("designs/d/a.png", 60)
        assert signer.extract_key(url) == "designs/d/a.png"
