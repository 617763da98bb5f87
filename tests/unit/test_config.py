"""Tests for configuration management."""

import pytest

from nanodc_monitor.data.models import ImageType, SlotDescriptor
from nanodc_monitor.server.config import (
    ApiConfig,
    Config,
    RefreshConfig,
    ServerConfig,
)


class TestConfig:
    def test_default_config(self):
        config = Config()
        assert config.deployment_name == "NanoDC Monitor"
        assert config.default_site == "bc02"
        assert config.refresh.interval == 20.0
        assert config.refresh.quiescence_delay == 0.1
        assert config.server.host == "0.0.0.0"
        assert config.server.port == 8080
        assert config.api.verify is True

    def test_default_layout(self):
        layout = Config().build_layout()
        assert len(layout) == 15
        assert layout[4] == SlotDescriptor(ImageType.LONOVO_POST, 4)
        assert layout[13] == SlotDescriptor(ImageType.STORAGE_1, 13)

    def test_from_dict(self):
        data = {
            "deployment": {
                "name": "Test Monitor",
                "default_site": "gy01",
            },
            "api": {
                "base_url": "https://api.test",
                "timeout": 5,
                "verify": False,
            },
            "refresh": {
                "interval": 30,
                "quiescence_delay": 0,
            },
            "server": {
                "host": "localhost",
                "port": 9000,
            },
            "sites": {
                "gy01": {"display_name": "GY01"},
                "broken": "not a mapping",
            },
            "layout": ["LOGO", "LONOVO_POST"],
        }
        config = Config.from_dict(data)

        assert config.deployment_name == "Test Monitor"
        assert config.default_site == "gy01"
        assert config.api.base_url == "https://api.test"
        assert config.api.timeout == 5
        assert config.api.verify is False
        assert config.refresh.interval == 30
        assert config.refresh.quiescence_delay == 0
        assert config.server.host == "localhost"
        assert config.server.port == 9000
        assert list(config.sites) == ["gy01"]
        assert len(config.build_layout()) == 2

    def test_from_yaml(self, tmp_path):
        yaml_content = """
deployment:
  name: "YAML Test"
  default_site: bc02
refresh:
  interval: 15
sites:
  bc02:
    display_name: BC02
    rules:
      4: {keyword: "Filecoin Miner", terms: [Filecoin, Miner], match: all, display_name: "Miner"}
"""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml_content)

        config = Config.from_yaml(config_file)

        assert config.deployment_name == "YAML Test"
        assert config.refresh.interval == 15
        mapper = config.build_registry().mapper_for("bc02")
        assert mapper.is_mapped_slot(4) is True
        assert mapper.is_mapped_slot(9) is False
        assert mapper.get_display_name(ImageType.LONOVO_POST, 4) == "Miner"

    def test_from_yaml_missing_file(self, tmp_path):
        config = Config.from_yaml(tmp_path / "missing.yaml")
        assert config.deployment_name == "NanoDC Monitor"

    def test_load_from_env(self, tmp_path, monkeypatch):
        config_file = tmp_path / "env.yaml"
        config_file.write_text("deployment:\n  name: From Env\n")
        monkeypatch.setenv("NANODC_MONITOR_CONFIG", str(config_file))
        monkeypatch.chdir(tmp_path)

        assert Config.load().deployment_name == "From Env"

    def test_load_explicit_path_wins(self, tmp_path, monkeypatch):
        explicit = tmp_path / "explicit.yaml"
        explicit.write_text("deployment:\n  name: Explicit\n")
        env_file = tmp_path / "env.yaml"
        env_file.write_text("deployment:\n  name: From Env\n")
        monkeypatch.setenv("NANODC_MONITOR_CONFIG", str(env_file))

        assert Config.load(str(explicit)).deployment_name == "Explicit"

    def test_builtin_sites_in_registry(self):
        registry = Config().build_registry()
        assert "bc02" in registry
        assert registry.mapper_for("bc02").is_mapped_slot(4) is True

    def test_bad_layout_raises(self):
        config = Config(layout=["LOGO", "UNKNOWN_RACK"])
        with pytest.raises(ValueError):
            config.build_layout()

    def test_to_dict(self):
        config = Config(
            deployment_name="Test",
            api=ApiConfig(base_url="https://api.test"),
            refresh=RefreshConfig(interval=5),
            server=ServerConfig(port=9999),
        )
        data = config.to_dict()

        assert data["deployment"]["name"] == "Test"
        assert data["api"]["base_url"] == "https://api.test"
        assert data["refresh"]["interval"] == 5
        assert data["server"]["port"] == 9999
        assert "bc02" in data["sites"]
        assert len(data["layout"]) == 15
