# tests/conftest.py
import shutil
from pathlib import Path

import pytest

from radical.futures import config, plan, rng


def pytest_sessionfinish(session, exitstatus):
    root = Path(__file__).parent
    for pycache_dir in root.rglob('__pycache__'):
        shutil.rmtree(pycache_dir)


@pytest.fixture(autouse=True)
def fresh_plan(monkeypatch):
    """Every test starts on a sequential plan with default settings."""
    for name in list(config.FutureSettings.model_fields):
        monkeypatch.delenv(f"{config.ENV_PREFIX}{name.upper()}", raising=False)
    config.reset_settings()
    plan.reset_plan()
    rng.set_root_seed(None)
    yield
    plan.reset_plan()
    config.reset_settings()
