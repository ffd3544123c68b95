"""Shared fixtures for tpn-cli tests."""

import pytest

from tpn.config import Settings


@pytest.fixture
def settings(tmp_path):
    """Settings pointing every session file into a temporary directory."""
    return Settings(
        _env_file=None,
        base_urls=["http://primary.test", "http://backup.test"],
        ip_service="http://ip.test",
        timeout=5.0,
        retry_attempts=3,
        retry_delay=0.0,
        tmp_dir=tmp_path,
        sudoers_file=tmp_path / "sudoers.d" / "tpn",
    )
