import pytest

from task_runner.config import EngineConfig
from task_runner.tools import ToolRegistry


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def registry(workspace):
    return ToolRegistry(workspace, command_timeout=10)


@pytest.fixture
def fast_config():
    """Engine config with no back-off so retry tests stay quick."""
    return EngineConfig(retry_backoff_seconds=0)
