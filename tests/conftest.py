from pathlib import Path

import pytest
import structlog

from slab import config as config_module
from slab.config import Config


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    """An empty project root marked with `.slab/`, used as the cwd."""
    root = tmp_path / "project"
    (root / ".slab").mkdir(parents=True)
    monkeypatch.chdir(root)
    return root.resolve()


@pytest.fixture
def isolated_home(tmp_path: Path, monkeypatch) -> Path:
    global_dir = tmp_path / "home" / ".config" / "slab"
    monkeypatch.setattr(config_module, "GLOBAL_DIR", global_dir)
    monkeypatch.setattr(config_module, "GLOBAL_CONFIG_PATH", global_dir / "config.toml")
    monkeypatch.setattr(config_module, "SETTINGS_PATH", global_dir / "settings.json")
    for name in ("SLAB_DEFAULT_MODEL", "SLAB_CONTEXT_LIMIT", "SLAB_OLLAMA_HOST", "SLAB_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return global_dir


@pytest.fixture
def config(project: Path, isolated_home: Path) -> Config:
    return Config(default_model="test-model")


def write(root: Path, rel: str, text: str) -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.fixture
def make_file(project: Path):
    def _make(rel: str, text: str = "") -> Path:
        return write(project, rel, text)

    return _make


@pytest.fixture(autouse=True)
def _reset_logging():
    # CLI commands bind log output to the stream that was current when they ran
    yield
    structlog.reset_defaults()
