"""Tests for contentsync.config module."""

from __future__ import annotations

import os
import stat
import tomllib
from pathlib import Path

import pytest
from pydantic import SecretStr

from contentsync.config import (
    AppConfig,
    EngineConfig,
    RemoteConfig,
    _dump_toml,
    _format_toml_value,
    config_exists,
    ensure_dirs,
    load_config,
    save_config,
)
from contentsync.policy.models import (
    EntityTypeConfig,
    ExportMode,
    Flow,
    ImportMode,
    ImportUpdateBehavior,
    Pool,
    PoolUsage,
)

# ---------------------------------------------------------------------------
# 1. Default values
# ---------------------------------------------------------------------------


def test_engine_config_defaults():
    cfg = EngineConfig()
    assert cfg.log_level == "info"
    assert cfg.site_base_url == ""
    assert cfg.content_store == ""


def test_remote_config_defaults():
    cfg = RemoteConfig()
    assert cfg.timeout_seconds == 30
    assert cfg.max_retries == 3
    assert cfg.poll_interval_seconds == 5
    assert cfg.max_poll_interval_seconds == 60
    assert cfg.password.get_secret_value() == ""


def test_app_config_defaults():
    cfg = AppConfig()
    assert cfg.engine.log_level == "info"
    assert cfg.pools == {}
    assert cfg.flows == {}


# ---------------------------------------------------------------------------
# 2. AppConfig properties (use base_dir fixture)
# ---------------------------------------------------------------------------


def test_base_dir_property(base_dir: Path):
    assert AppConfig().base_dir == base_dir


def test_db_path(base_dir: Path):
    assert AppConfig().db_path == base_dir / "contentsync.db"


def test_log_dir(base_dir: Path):
    assert AppConfig().log_dir == base_dir / "logs"


# ---------------------------------------------------------------------------
# 3. ensure_dirs / config_exists
# ---------------------------------------------------------------------------


def test_ensure_dirs_creates_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    fresh = tmp_path / "fresh_base"
    monkeypatch.setattr("contentsync.config.get_base_dir", lambda: fresh)

    assert not fresh.exists()
    ensure_dirs()
    assert fresh.is_dir()
    assert (fresh / "logs").is_dir()


def test_config_exists_false_when_missing(base_dir: Path):
    assert config_exists() is False


def test_config_exists_true_when_file_present(base_dir: Path):
    (base_dir / "config.toml").write_text("")
    assert config_exists() is True


# ---------------------------------------------------------------------------
# 4. Pools and Flows keyed by id
# ---------------------------------------------------------------------------


def test_ids_filled_from_table_keys():
    cfg = AppConfig.model_validate(
        {
            "pools": {"main": {"backend_url": "https://pool.example.com"}},
            "flows": {"content": {"weight": 5}},
        }
    )
    assert cfg.pools["main"].id == "main"
    assert cfg.flows["content"].id == "content"
    assert cfg.flows["content"].weight == 5


def test_entity_type_config_accepts_import_alias():
    cfg = EntityTypeConfig.model_validate({"import": "manually", "export": "automatically"})
    assert cfg.import_ == ImportMode.MANUALLY
    assert cfg.export == ExportMode.AUTOMATICALLY


# ---------------------------------------------------------------------------
# 5. save_config / load_config round-trip
# ---------------------------------------------------------------------------


def _full_config() -> AppConfig:
    return AppConfig(
        engine=EngineConfig(log_level="debug", site_base_url="https://site.example.com"),
        remote=RemoteConfig(timeout_seconds=10, username="sync", password=SecretStr("s3cret")),
        pools={
            "main": Pool(
                id="main",
                label="Main pool",
                backend_url="https://pool.example.com/rest",
                site_id="site_a",
                password=SecretStr("pool-pass"),
            )
        },
        flows={
            "content": Flow(
                id="content",
                weight=2,
                entity_types={
                    "node-article": EntityTypeConfig(
                        export=ExportMode.AUTOMATICALLY,
                        import_=ImportMode.MANUALLY,
                        export_pools={"main": PoolUsage.FORCE},
                        import_pools={"main": PoolUsage.ALLOW},
                        import_updates=ImportUpdateBehavior.ALLOW_OVERRIDE,
                        handler_settings={"ignore_unpublished": False},
                        version="abc123",
                    ),
                    "node-article-body": EntityTypeConfig(handler="ignore"),
                },
            )
        },
    )


def test_save_load_round_trip_defaults(base_dir: Path):
    save_config(AppConfig())
    loaded = load_config()

    assert loaded.engine.log_level == "info"
    assert loaded.remote.timeout_seconds == 30
    assert loaded.pools == {}


def test_save_load_round_trip_pools_and_flows(base_dir: Path):
    save_config(_full_config())
    loaded = load_config()

    assert loaded.engine.site_base_url == "https://site.example.com"
    assert loaded.remote.password.get_secret_value() == "s3cret"

    pool = loaded.pools["main"]
    assert pool.id == "main"
    assert pool.site_id == "site_a"
    assert pool.password.get_secret_value() == "pool-pass"

    flow = loaded.flows["content"]
    assert flow.weight == 2
    cfg = flow.get_config("node", "article")
    assert cfg is not None
    assert cfg.export == ExportMode.AUTOMATICALLY
    assert cfg.import_ == ImportMode.MANUALLY
    assert cfg.export_pools == {"main": PoolUsage.FORCE}
    assert cfg.import_pools == {"main": PoolUsage.ALLOW}
    assert cfg.import_updates == ImportUpdateBehavior.ALLOW_OVERRIDE
    assert cfg.handler_settings == {"ignore_unpublished": False}
    assert cfg.version == "abc123"

    field_cfg = flow.get_config("node", "article", "body")
    assert field_cfg is not None
    assert field_cfg.ignored


def test_load_config_no_file_returns_defaults(base_dir: Path):
    cfg = load_config()
    assert cfg.engine.log_level == EngineConfig().log_level
    assert cfg.flows == {}


def test_save_config_sets_permissions(base_dir: Path):
    save_config(AppConfig())
    mode = stat.S_IMODE(os.stat(base_dir / "config.toml").st_mode)
    assert mode == 0o600


# ---------------------------------------------------------------------------
# 6. _format_toml_value
# ---------------------------------------------------------------------------


def test_format_toml_value_string():
    assert _format_toml_value("hello") == '"hello"'


def test_format_toml_value_string_with_quotes():
    assert _format_toml_value('say "hi"') == '"say \\"hi\\""'


def test_format_toml_value_int_and_bool():
    assert _format_toml_value(42) == "42"
    assert _format_toml_value(True) == "true"
    assert _format_toml_value(False) == "false"


def test_format_toml_value_enum():
    assert _format_toml_value(PoolUsage.FORCE) == '"force"'


def test_format_toml_value_list_and_inline_table():
    assert _format_toml_value(["a", 1]) == '["a", 1]'
    assert _format_toml_value({"main": "force"}) == '{ main = "force" }'
    assert _format_toml_value({}) == "{}"


def test_format_toml_value_secret_str():
    assert _format_toml_value(SecretStr("my-password")) == '"my-password"'


def test_format_toml_value_unsupported_type():
    with pytest.raises(TypeError, match="Unsupported TOML value type"):
        _format_toml_value(object())


# ---------------------------------------------------------------------------
# 7. _dump_toml
# ---------------------------------------------------------------------------


def test_dump_toml_sections():
    toml_str = _dump_toml(_full_config())

    assert "[engine]" in toml_str
    assert "[remote]" in toml_str
    assert "[pools.main]" in toml_str
    assert "[flows.content.entity_types.node-article]" in toml_str
    parsed = tomllib.loads(toml_str)
    assert parsed["flows"]["content"]["entity_types"]["node-article"]["import"] == "manually"
    assert "id" not in parsed["pools"]["main"]
    # unset options of a field config stay unset
    assert parsed["flows"]["content"]["entity_types"]["node-article-body"] == {"handler": "ignore"}


def test_field_config_survives_round_trip_without_disabling(base_dir: Path):
    cfg = _full_config()
    cfg.flows["content"].entity_types["node-article-tags"] = EntityTypeConfig(
        handler_settings={"export_referenced_entities": False}
    )
    save_config(cfg)

    loaded = load_config().flows["content"].get_config("node", "article", "tags")
    assert loaded is not None
    assert "export" not in loaded.model_fields_set
    assert loaded.handler_settings == {"export_referenced_entities": False}


def test_secret_not_in_repr():
    cfg = RemoteConfig(password=SecretStr("super-secret"))
    assert "super-secret" not in repr(cfg)
    assert "super-secret" not in str(cfg)
