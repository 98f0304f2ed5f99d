from __future__ import annotations

from pathlib import Path

import pytest

from pump_recovery_bot.config import settings


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv(settings.CONFIG_FILE_ENV_VAR, str(tmp_path / "absent.toml"))
    monkeypatch.delenv(settings.MODE_ENV_VAR, raising=False)
    settings.get_app_config.cache_clear()
    yield
    settings.get_app_config.cache_clear()
