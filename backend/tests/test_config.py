"""
Tests for gateway configuration validation.
"""
import pytest

from courtpay import main
from courtpay.api.deps import build_services
from courtpay.config import payos_config, vnpay_config
from courtpay.exceptions import ConfigurationError


class TestGatewayConfig:
    def test_complete_settings_build_both_configs(self, test_settings):
        vnpay = vnpay_config(test_settings)
        payos = payos_config(test_settings)

        assert vnpay.tmn_code == "CPTEST01"
        assert payos.checksum_key == "payos-checksum-test"

    def test_values_are_stripped(self, test_settings):
        source = test_settings.model_copy(update={"vnpay_hash_secret": "  SECRET  "})

        assert vnpay_config(source).hash_secret == "SECRET"

    def test_missing_vnpay_keys_are_listed(self, test_settings):
        source = test_settings.model_copy(update={"vnpay_tmn_code": "", "vnpay_hash_secret": "   "})

        with pytest.raises(ConfigurationError) as exc_info:
            vnpay_config(source)

        assert exc_info.value.error_code == "payment:config:missing"
        assert exc_info.value.details["gateway"] == "vnpay"
        assert exc_info.value.details["missing"] == ["VNPAY_TMN_CODE", "VNPAY_HASH_SECRET"]

    def test_missing_payos_checksum_key(self, test_settings):
        source = test_settings.model_copy(update={"payos_checksum_key": ""})

        with pytest.raises(ConfigurationError) as exc_info:
            payos_config(source)

        assert "PAYOS_CHECKSUM_KEY" in exc_info.value.details["missing"]

    def test_services_refuse_to_start_unconfigured(self, test_settings):
        source = test_settings.model_copy(update={"payos_api_key": ""})

        with pytest.raises(ConfigurationError):
            build_services(source, session_factory=None)


class RecordingEngine:
    """Wraps the real engine and notes whether it was disposed."""

    def __init__(self, engine):
        self.engine = engine
        self.disposed = False

    def __getattr__(self, name):
        return getattr(self.engine, name)

    async def dispose(self):
        self.disposed = True
        await self.engine.dispose()


class TestStartup:

    @pytest.mark.asyncio
    async def test_failed_startup_disposes_engine(self, test_settings, monkeypatch):
        engines = []
        real_build_engine = main.build_engine

        def recording_build_engine(database_path):
            engine = RecordingEngine(real_build_engine(database_path))
            engines.append(engine)
            return engine

        monkeypatch.setattr(main, "build_engine", recording_build_engine)
        app = main.create_app(test_settings.model_copy(update={"payos_api_key": ""}))

        with pytest.raises(ConfigurationError):
            async with app.router.lifespan_context(app):
                pass

        assert len(engines) == 1
        assert engines[0].disposed
