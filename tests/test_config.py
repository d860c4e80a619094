from pathlib import Path

import pytest

from flowci.config import RunConfig


def test_defaults():
    config = RunConfig.from_env({})
    assert config == RunConfig()
    assert config.max_workers is None
    assert config.default_timeout_minutes == 360
    assert config.services is True


def test_from_env():
    config = RunConfig.from_env({
        "FLOWCI_MAX_WORKERS": "4",
        "FLOWCI_DEFAULT_TIMEOUT_MINUTES": "30",
        "FLOWCI_WORKSPACE": "/tmp/ws",
        "FLOWCI_SHELL": "sh",
        "FLOWCI_STUB_ACTIONS": "yes",
    })
    assert config.max_workers == 4
    assert config.default_timeout_minutes == 30.0
    assert config.workspace == Path("/tmp/ws")
    assert config.shell == "sh"
    assert config.stub_actions is True


def test_from_process_environment(monkeypatch):
    monkeypatch.setenv("FLOWCI_MAX_WORKERS", "2")
    assert RunConfig.from_env().max_workers == 2


@pytest.mark.parametrize("value", ["0", "-3", "many"])
def test_invalid_max_workers(value):
    with pytest.raises(ValueError):
        RunConfig.from_env({"FLOWCI_MAX_WORKERS": value})


def test_override_ignores_unset_values():
    config = RunConfig(max_workers=4, shell="sh").override(max_workers=None, shell="bash", run_timeout=30.0)
    assert config.max_workers == 4
    assert config.shell == "bash"
    assert config.run_timeout == 30.0
