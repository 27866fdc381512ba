"""Test helpers shared across modules: real image payloads and wired services."""

import base64
import io

from PIL import Image

from atelier.bootstrap import Services
from atelier.config import Settings
from atelier.repository import InMemoryDesignRepository
from atelier.services.batch_upload import BatchUploader
from atelier.services.generate import GenerationPipeline
from atelier.services.image_resolution import ImageResolver
from atelier.services.lineage import LineageEngine
from atelier.services.mock_stubs import MockImageGenerator
from atelier.utils.r2 import R2Config, R2Storage
from atelier.utils.retry import RetryPolicy
from atelier.utils.signing import UrlSigner

USER = "user-1"
OTHER_USER = "user-2"

TEST_CONFIG = R2Config(
    account_id="acct123",
    access_key_id="AKIDTEST",
    secret_access_key="secret-test",
    bucket_name="atelier-test",
)
DISABLED_CONFIG = R2Config(
    account_id="", access_key_id="", secret_access_key="", bucket_name="atelier-test"
)

# Valid data-URI shape, invalid base64 body
CORRUPT_DATA_URI = "data:image/png;base64,@@not*base64@@"


def make_png_bytes(color: str = "red", size: tuple[int, int] = (8, 8), fmt: str = "PNG") -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


def make_data_uri(color: str = "red", fmt: str = "PNG") -> str:
    mime = "image/jpeg" if fmt == "JPEG" else f"image/{fmt.lower()}"
    return f"data:{mime};base64,{base64.b64encode(make_png_bytes(color, fmt=fmt)).decode()}"


def fake_presign(operation, Params, ExpiresIn):  # noqa: N803 - boto3 kwarg names
    """Mimics the path-style URL boto3 presigns against the R2 account endpoint."""
    return (
        f"https://{TEST_CONFIG.account_id}.r2.cloudflarestorage.com/"
        f"{Params['Bucket']}/{Params['Key']}?X-Amz-Expires={ExpiresIn}&X-Amz-Signature=deadbeef"
    )


def make_services(s3_client=None, **settings_overrides) -> Services:
    """Services wired like build_services(), with injectable R2 client and zero delays."""
    settings = Settings(
        upload_backoff_base_seconds=0,
        upload_chunk_delay_seconds=0,
        **settings_overrides,
    )
    config = TEST_CONFIG if s3_client is not None else DISABLED_CONFIG
    storage = R2Storage(config, client=s3_client)
    signer = UrlSigner(config, client=s3_client)
    repo = InMemoryDesignRepository()
    uploader = BatchUploader(
        storage,
        window_size=settings.upload_window_size,
        retry_policy=RetryPolicy(max_attempts=settings.upload_max_attempts, base_delay=0),
        chunk_delay=0,
    )
    resolver = ImageResolver(signer)
    generator = MockImageGenerator()
    return Services(
        settings=settings,
        repo=repo,
        storage=storage,
        signer=signer,
        uploader=uploader,
        lineage=LineageEngine(repo),
        resolver=resolver,
        generator=generator,
        pipeline=GenerationPipeline(repo, generator, uploader, storage, resolver),
    )
