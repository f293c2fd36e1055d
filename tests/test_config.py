from __future__ import annotations

import os

import pytest

from hx_nrepl.config import Config

ENV_VARS = [
    "HX_NREPL_HOST",
    "HX_NREPL_PORT_LOW",
    "HX_NREPL_PORT_HIGH",
    "HX_NREPL_TIMEOUT_MS",
    "HX_NREPL_CONNECT_TIMEOUT",
    "HX_NREPL_READY_INITIAL_DELAY",
    "HX_NREPL_READY_INTERVAL",
    "HX_NREPL_READY_BUDGET",
    "HX_NREPL_NREPL_VERSION",
    "HX_NREPL_CIDER_VERSION",
]


@pytest.fixture(autouse=True)
def clean_env():
    # load_dotenv writes straight into os.environ
    saved = {name: os.environ.pop(name) for name in ENV_VARS if name in os.environ}
    yield
    for name in ENV_VARS:
        os.environ.pop(name, None)
    os.environ.update(saved)


class TestFromEnv:
    def test_defaults(self, tmp_path):
        cfg = Config.from_env(tmp_path / "missing.env")
        assert cfg.host == "127.0.0.1"
        assert (cfg.port_low, cfg.port_high) == (7888, 7988)
        assert cfg.timeout_ms == 60_000
        assert cfg.ready_initial_delay == 2.0
        assert cfg.ready_interval == 0.5
        assert cfg.ready_budget == 30.0

    def test_reads_env_file(self, tmp_path):
        env = tmp_path / ".env"
        env.write_text(
            "HX_NREPL_PORT_LOW=9000\n"
            "HX_NREPL_PORT_HIGH=9010\n"
            "HX_NREPL_READY_BUDGET=5\n"
            "HX_NREPL_CIDER_VERSION=0.50.0\n"
        )
        cfg = Config.from_env(env)
        assert (cfg.port_low, cfg.port_high) == (9000, 9010)
        assert cfg.ready_budget == 5.0
        assert cfg.cider_version == "0.50.0"

    def test_process_env_wins_over_file(self, tmp_path, monkeypatch):
        env = tmp_path / ".env"
        env.write_text("HX_NREPL_TIMEOUT_MS=100\n")
        monkeypatch.setenv("HX_NREPL_TIMEOUT_MS", "2500")
        assert Config.from_env(env).timeout_ms == 2500

    def test_bad_number(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HX_NREPL_PORT_LOW", "lots")
        with pytest.raises(ValueError, match="HX_NREPL_PORT_LOW"):
            Config.from_env(tmp_path / "missing.env")


class TestValidation:
    def test_empty_port_range(self):
        with pytest.raises(ValueError):
            Config(port_low=8000, port_high=7999)

    def test_non_positive_timeout(self):
        with pytest.raises(ValueError):
            Config(timeout_ms=0)

    def test_resolve_workspace(self, tmp_path):
        assert Config().resolve_workspace(str(tmp_path)) == str(tmp_path.resolve())
        with pytest.raises(ValueError):
            Config().resolve_workspace(str(tmp_path / "missing"))
