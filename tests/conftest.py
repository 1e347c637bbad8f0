"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from ptunnelctl.config import AppConfig, load_config

ConfigFactory = Callable[..., AppConfig]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def sandbox_env(tmp_path: Path) -> dict[str, str]:
    """Return environment overrides that keep every path inside *tmp_path*."""
    return {
        "PTUNNELCTL_CONFIG_FILE": str(tmp_path / "missing-config.yml"),
        "PTUNNELCTL_CONFIG_DIR": str(tmp_path / "power-tunnel"),
        "PTUNNELCTL_LOGS_DIR": str(tmp_path / "logs"),
        "PTUNNELCTL_RUNTIME_DIR": str(tmp_path / "run"),
        "PTUNNELCTL_TEMPLATES_DIR": str(tmp_path / "templates"),
        "PTUNNELCTL_HOSTNAME": "db-host-01",
        "PTUNNELCTL_REQUIRE_ROOT": "false",
        "PTUNNELCTL_HEALTH__INTERVAL": "0",
        "PTUNNELCTL_SYSTEMD__UNIT_DIR": str(tmp_path / "systemd"),
    }


@pytest.fixture
def config_factory(tmp_path: Path) -> ConfigFactory:
    """Build an :class:`AppConfig` rooted in the temporary directory."""

    def _factory(**extra: str) -> AppConfig:
        env = sandbox_env(tmp_path)
        env.update(extra)
        return load_config(env=env)

    return _factory


@pytest.fixture
def app_config(config_factory: ConfigFactory) -> AppConfig:
    """Return the default sandboxed configuration."""
    return config_factory()
