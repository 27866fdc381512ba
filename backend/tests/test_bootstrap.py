"""Tests for process wiring: settings, service construction and logging."""

import structlog

from atelier.bootstrap import build_generator, build_services
from atelier.config import Settings
from atelier.logging import _resolve_level, _TeeWriter, configure_logging
from atelier.repository import InMemoryDesignRepository, SqlDesignRepository
from atelier.services.mock_stubs import MockImageGenerator
from atelier.utils.r2 import R2Config


class TestSettings:
    """Settings defaults and R2 config derivation."""

    def test_defaults(self):
        """In-memory, mock generator and the documented signing windows."""
        s = Settings(_env_file=None)
        assert s.use_database is False
        assert s.use_mock_generator is True
        assert s.presigned_url_expiry_seconds == 3600
        assert s.download_url_expiry_seconds == 7200
        assert s.upload_window_size == 3

    def test_env_override(self, monkeypatch):
        """Environment variables override defaults, case-insensitively."""
        monkeypatch.setenv("UPLOAD_WINDOW_SIZE", "5")
        monkeypatch.setenv("r2_bucket_name", "other-bucket")
        s = Settings(_env_file=None)
        assert s.upload_window_size == 5
        assert s.r2_bucket_name == "other-bucket"

    def test_r2_config_from_settings(self):
        """Missing credentials are reported by name."""
        config = R2Config.from_settings(Settings(_env_file=None, r2_account_id="acct"))
        assert not config.is_complete
        assert config.missing_fields() == ["access_key_id", "secret_access_key"]


class TestBuildServices:
    """build_services() wiring."""

    def test_offline_defaults(self):
        """Without credentials: storage disabled, in-memory repo, mock generator."""
        services = build_services(Settings(_env_file=None))
        assert not services.storage.available
        assert not services.signer.available
        assert isinstance(services.repo, InMemoryDesignRepository)
        assert isinstance(services.generator, MockImageGenerator)
        assert services.lineage.repo is services.repo
        assert services.pipeline.uploader is services.uploader

    def test_configured_storage_shares_client(self):
        """The signer reuses the storage client (offline boto3, no network)."""
        settings = Settings(
            _env_file=None,
            r2_account_id="acct123",
            r2_access_key_id="AKIDTEST",
            r2_secret_access_key="secret-test",
        )
        services = build_services(settings)
        assert services.storage.available
        assert services.signer.available
        assert services.storage.client is services.signer._client

    def test_upload_settings_flow_into_uploader(self):
        """Window, attempts and delays come from settings."""
        settings = Settings(
            _env_file=None,
            upload_window_size=5,
            upload_max_attempts=4,
            upload_backoff_base_seconds=0.25,
            upload_chunk_delay_seconds=0,
        )
        uploader = build_services(settings).uploader
        assert uploader.window_size == 5
        assert uploader.retry_policy.max_attempts == 4
        assert uploader.retry_policy.base_delay == 0.25
        assert uploader.chunk_delay == 0

    def test_database_repo_selected(self):
        """use_database builds the SQLAlchemy repository (no connection is made)."""
        settings = Settings(
            _env_file=None, use_database=True, database_url="postgresql+asyncpg://u:p@localhost/x"
        )
        assert isinstance(build_services(settings).repo, SqlDesignRepository)

    def test_injected_repo_wins(self):
        """A caller-supplied repository is used as-is."""
        repo = InMemoryDesignRepository()
        assert build_services(Settings(_env_file=None), repo=repo).repo is repo


class TestBuildGenerator:
    """Generator selection."""

    def test_mock_without_key(self):
        """No API key means the mock even when mock mode is off."""
        settings = Settings(_env_file=None, use_mock_generator=False, google_ai_api_key="")
        assert isinstance(build_generator(settings), MockImageGenerator)

    def test_gemini_with_key(self):
        """A key and mock mode off selects Gemini with the configured model."""
        settings = Settings(
            _env_file=None,
            use_mock_generator=False,
            google_ai_api_key="test-key",
            gemini_model="gemini-test",
            generation_timeout_seconds=12,
        )
        generator = build_generator(settings)
        assert generator.model == "gemini-test"
        assert generator.timeout_seconds == 12


class TestLogging:
    """structlog configuration."""

    def test_level_resolution(self):
        """Unknown level names fall back to INFO."""
        assert _resolve_level("debug") == 10
        assert _resolve_level("nonsense") == 20

    def test_json_renderer_outside_development(self, capsys):
        """Production logs are JSON lines with bound context."""
        configure_logging(environment="production", log_level="INFO", log_file="")
        structlog.get_logger().info("probe_event", design_id="d-1")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        assert '"event": "probe_event"' in line
        assert '"design_id": "d-1"' in line
        configure_logging(environment="development", log_file="")

    def test_tee_writer_copies_to_file(self, tmp_path, capsys):
        """Lines go to stdout and the log file."""
        path = tmp_path / "atelier.log"
        writer = _TeeWriter(str(path))
        writer.write("hello\n")
        writer.flush()
        assert "hello" in capsys.readouterr().out
        assert path.read_text() == "hello\n"

    def test_tee_writer_unwritable_path(self, tmp_path, capsys):
        """An unopenable log file degrades to stdout with a warning."""
        writer = _TeeWriter(str(tmp_path / "missing-dir" / "x.log"))
        writer.write("still here\n")
        captured = capsys.readouterr()
        assert "still here" in captured.out
        assert "Logging to stdout only" in captured.err
