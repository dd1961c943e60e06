import pytest

from config import get_settings


@pytest.fixture
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_settings_read_ledger_environment(tmp_path, monkeypatch, fresh_settings) -> None:
    monkeypatch.setenv("LEDGER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LEDGER_SNAPSHOT_KEY", "books")
    monkeypatch.setenv("LEDGER_INSIGHTS_TIMEOUT_SECS", "2.5")
    monkeypatch.setenv("LEDGER_LOG_LEVEL", "debug")
    monkeypatch.setenv("LEDGER_PASSWORD", "")

    settings = get_settings()

    assert settings.data_dir == (tmp_path / "data").resolve()
    assert settings.data_dir.is_dir()
    assert settings.snapshot_key == "books"
    assert settings.password is None
    assert settings.insights_timeout_secs == 2.5
    assert settings.log_level == "DEBUG"
    assert not hasattr(settings, "timezone")
