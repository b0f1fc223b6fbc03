import pytest

from vent_bridge import constants


@pytest.fixture(autouse=True)
def _isolate_config_env(monkeypatch):
    """Keep a developer's VENT_BRIDGE_CONFIG from leaking into tests."""
    monkeypatch.delenv(constants.CONFIG_ENV_VAR, raising=False)
