from pathlib import Path

from savesync.core import config as config_module


def test_load_config_creates_from_template(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    runtime_dir = tmp_path / "runtime"
    template.write_text(
        "\n".join(
            [
                "rclone:",
                "  binary: /opt/rclone/rclone",
                "  provider: onedrive",
                "  remote_base_folder: MySaves",
                "sync:",
                "  similar_threshold_sec: 30",
                "logging:",
                f"  file: {runtime_dir / 'service.log'}",
                "database:",
                f"  path: {runtime_dir / 'service.db'}",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.rclone.binary == "/opt/rclone/rclone"
    assert cfg.rclone.provider == "onedrive"
    assert cfg.rclone.remote_base_folder == "MySaves"
    assert cfg.sync.similar_threshold_sec == 30
    assert cfg.transfer.max_retries == 3


def test_load_config_creates_defaults_when_template_missing(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", tmp_path / "missing-template.yaml")
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.rclone.provider == "gdrive"
    assert cfg.sync.auto_action_sec == 5
    assert cfg.transfer.retry_delay_sec == 2.0


def test_load_config_falls_back_when_template_invalid(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    template.write_text("rclone: [invalid\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.rclone.provider == "gdrive"


def test_save_config_round_trips(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)
    cfg = config_module.AppConfig()
    cfg.sync.quarantine_dir = ".quarantine"
    cfg.web_port = 9000

    config_module.save_config(cfg, target)
    loaded = config_module.load_config(target)

    assert loaded.sync.quarantine_dir == ".quarantine"
    assert loaded.web_port == 9000


def test_app_home_env_override(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("SAVESYNC_HOME", str(tmp_path / "home"))

    assert config_module._app_home() == tmp_path / "home"


def test_default_rclone_flags_keep_tls_verification():
    flags = config_module.RcloneConfig().performance_flags

    assert "--no-check-certificate" not in flags
    assert flags[:2] == ["--timeout", "10s"]
