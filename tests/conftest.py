from __future__ import annotations

import pytest

from nova_voice.config.settings import CONFIG_FILE_ENV, Settings, get_settings
from nova_voice.config.store import ConfigStore
from nova_voice.core.logger import reset_logging


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv(CONFIG_FILE_ENV, str(tmp_path / "nova.json"))
    monkeypatch.setenv("NOVA_LOG_DIR", "")
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    reset_logging()


@pytest.fixture
def make_store():
    def _make(**overrides) -> ConfigStore:
        overrides.setdefault("log_dir", None)
        return ConfigStore(Settings(**overrides))

    return _make
