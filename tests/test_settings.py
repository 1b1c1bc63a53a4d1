from core import settings
from storage.db_core import _pragmas


def test_env_helpers_fall_back_on_empty_or_bad_values(monkeypatch):
    monkeypatch.setenv("X_INT", "12")
    monkeypatch.setenv("X_BAD", "twelve")
    monkeypatch.setenv("X_FLAG", "off")
    monkeypatch.setenv("X_MODE", " RAW ")
    monkeypatch.delenv("X_MISSING", raising=False)

    assert settings._env_int("X_INT", 3) == 12
    assert settings._env_int("X_BAD", 3) == 3
    assert settings._env_float("X_MISSING", 0.5) == 0.5
    assert settings._env_bool("X_FLAG", True) is False
    assert settings._env_bool("X_BAD", True) is True
    assert settings._env_choice("X_MODE", "derive", {"derive", "raw"}) == "raw"
    assert settings._env_choice("X_BAD", "derive", {"derive", "raw"}) == "derive"


def test_pragmas_skip_unknown_synchronous_level(monkeypatch):
    monkeypatch.setattr("storage.db_core.SQLITE_SYNCHRONOUS", "SOMETIMES")
    assert not any(p.startswith("synchronous=") for p in _pragmas())
    monkeypatch.setattr("storage.db_core.SQLITE_SYNCHRONOUS", "FULL")
    assert "synchronous=FULL" in _pragmas()
