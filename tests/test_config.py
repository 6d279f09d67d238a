"""Tests for the configuration module."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

from turnloop.config import (
    Config,
    LoggingConfig,
    PermissionConfig,
    clear_secret_cache,
    fetch_secret,
    get_config,
    load_config,
    on_config_reload,
    reload_config,
    reset_config,
)
from turnloop.config.loader import deep_merge, dict_to_config, merge_configs
from turnloop.config.secrets import get_secrets_paths
from turnloop.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
    resolve_store_dir,
)
import turnloop.logging as turnloop_logging
from turnloop.logging import TRACE, VERBOSE, _SessionFormatter, resolve_level, session_logger, setup_logging
from turnloop.session.options import SessionOptions


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Keep the developer's own config and environment out of the tests."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for name in ("TURNLOOP_MODEL", "TURNLOOP_STORE_DIR", "TURNLOOP_LOG"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


class TestDeepMerge:
    """Test the deep merge algorithm."""

    def test_simple_override(self) -> None:
        result = deep_merge({"a": 1, "b": 2}, {"b": 3, "c": 4})
        assert result == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self) -> None:
        base = {"llm": {"model": "gpt-4o", "temperature": 0.5}}
        result = deep_merge(base, {"llm": {"temperature": 0.0}})
        assert result["llm"] == {"model": "gpt-4o", "temperature": 0.0}

    def test_none_does_not_override(self) -> None:
        assert deep_merge({"a": 1}, {"a": None}) == {"a": 1}

    def test_list_replaced_not_merged(self) -> None:
        result = deep_merge({"permission": {"deny_tools": ["rm"]}}, {"permission": {"deny_tools": ["mv"]}})
        assert result["permission"]["deny_tools"] == ["mv"]

    def test_base_not_mutated(self) -> None:
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}

    def test_merge_configs_multiple(self) -> None:
        assert merge_configs({"a": 1, "b": 2}, {"b": 3}, {}, {"c": 4}) == {"a": 1, "b": 3, "c": 4}


class TestConfigPaths:
    """Test platform-aware path resolution."""

    def test_windows_paths(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "win32")
        monkeypatch.setenv("PROGRAMDATA", "C:\\ProgramData")
        monkeypatch.setenv("APPDATA", "C:\\Users\\Test\\AppData\\Roaming")

        assert "ProgramData" in str(get_system_config_path())
        assert "AppData" in str(get_user_config_path())
        assert "turnloop" in str(get_user_config_path())

    def test_unix_system_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        assert get_system_config_path() == Path("/etc/turnloop/config.yaml")

    def test_unix_user_path_xdg(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", "/home/test/.config-custom")
        assert get_user_config_path() == Path("/home/test/.config-custom/turnloop/config.yaml")

    def test_project_config_path(self) -> None:
        assert get_project_config_path("/home/user/proj") == Path("/home/user/proj/.turnloop/config.yaml")

    def test_resolve_store_dir(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", "/home/test")

        assert resolve_store_dir(".turnloop/sessions", "/proj") == Path("/proj/.turnloop/sessions")
        assert resolve_store_dir("sessions") == tmp_path.resolve() / "sessions"
        assert resolve_store_dir("~/sessions", "/proj") == Path("/home/test/sessions")

    def test_get_config_paths_order(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")

        paths = get_config_paths(project_root="/project")

        assert len(paths) == 3
        assert "etc" in paths[0].parts
        assert "project" in paths[2].parts


class TestDictToConfig:
    """Test conversion of merged dicts into Config."""

    def test_defaults(self) -> None:
        config = dict_to_config({})
        assert config.permission.mode == "auto"
        assert config.pool.max_sessions == 50
        assert config.events.memory_cap == 10_000
        assert config.sandbox.exec_timeout_ms == 120_000

    def test_sections(self) -> None:
        config = dict_to_config(
            {
                "llm": {"model": "gpt-4o-mini", "max_tokens": "1024"},
                "session": {"max_concurrency": 5, "stream": True},
                "permission": {"mode": "readonly", "deny_tools": ["bash_run"]},
                "store": {"base_dir": "/tmp/sessions"},
                "sandbox": {"allow_paths": ["/opt/data", 3]},
            }
        )
        assert config.llm.model == "gpt-4o-mini"
        assert config.llm.max_tokens == 1024
        assert config.session.max_concurrency == 5
        assert config.permission.deny_tools == ["bash_run"]
        assert config.store.base_dir == "/tmp/sessions"
        assert config.sandbox.allow_paths == ["/opt/data"]

    def test_malformed_section_ignored(self) -> None:
        config = dict_to_config({"llm": "not a mapping"})
        assert config.llm.model == Config().llm.model

    def test_extra_sections_preserved(self) -> None:
        config = dict_to_config({"custom_field": "x", "nested": {"field": "value"}})
        assert config.extra == {"custom_field": "x", "nested": {"field": "value"}}

    def test_permission_round_trip(self) -> None:
        permission = PermissionConfig(mode="approval", allow_tools=["ls"], require_approval_tools=["write"])
        assert PermissionConfig.from_dict(permission.to_dict()) == permission
        assert PermissionConfig.from_dict(None).allow_tools is None

    def test_session_options_from_config(self) -> None:
        config = dict_to_config({"session": {"system": "be brief"}, "permission": {"mode": "readonly"}})

        options = SessionOptions.from_config(config)

        assert options.system == "be brief"
        assert options.permission.mode == "readonly"
        assert options.permission is not config.permission
        assert SessionOptions.from_dict(options.to_dict()) == options


class TestConfigLoading:
    """Test configuration loading from YAML layers."""

    @pytest.fixture
    def project(self, tmp_path: Path) -> Path:
        (tmp_path / ".turnloop").mkdir()
        return tmp_path

    def write(self, project: Path, text: str) -> None:
        (project / ".turnloop" / "config.yaml").write_text(text, encoding="utf-8")

    def test_load_yaml_config(self, project: Path) -> None:
        self.write(project, "llm:\n  model: gpt-4o\npool:\n  max_sessions: 4\n")

        config = load_config(project_root=str(project))

        assert config.llm.model == "gpt-4o"
        assert config.pool.max_sessions == 4

    def test_project_layer_wins_over_user(self, project: Path, tmp_path: Path) -> None:
        user_dir = tmp_path / "xdg" / "turnloop"
        user_dir.mkdir(parents=True)
        (user_dir / "config.yaml").write_text("llm:\n  model: user-model\n  max_tokens: 99\n", encoding="utf-8")
        self.write(project, "llm:\n  model: project-model\n")

        config = load_config(project_root=str(project))

        assert config.llm.model == "project-model"
        assert config.llm.max_tokens == 99

    def test_env_overrides_files(self, project: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        self.write(project, "llm:\n  model: gpt-4o\n")
        monkeypatch.setenv("TURNLOOP_MODEL", "from-env")
        monkeypatch.setenv("TURNLOOP_STORE_DIR", "/var/turnloop")
        monkeypatch.setenv("TURNLOOP_LOG", "/tmp/turnloop.log")

        config = load_config(project_root=str(project))

        assert config.llm.model == "from-env"
        assert config.store.base_dir == "/var/turnloop"
        assert config.logging.file == "/tmp/turnloop.log"

    def test_invalid_yaml_uses_defaults(self, project: Path) -> None:
        self.write(project, "invalid: yaml: :")

        config = load_config(project_root=str(project))

        assert config.llm.model == Config().llm.model

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        assert isinstance(load_config(project_root=str(tmp_path)), Config)


class TestConfigCaching:
    """Test config caching behavior."""

    def test_get_config_caches(self) -> None:
        assert get_config() is get_config()

    def test_reset_clears_cache(self) -> None:
        first = get_config()
        reset_config()
        assert get_config() is not first

    def test_project_config_not_cached(self, tmp_path: Path) -> None:
        assert load_config(project_root=str(tmp_path)) is not get_config()

    def test_reload_notifies_callbacks(self) -> None:
        seen = []
        unregister = on_config_reload(seen.append)

        config = reload_config()
        unregister()
        reload_config()

        assert seen == [config]


class TestSecrets:
    """Test fetch_secret."""

    @pytest.fixture(autouse=True)
    def clear_cache(self):
        clear_secret_cache()
        yield
        clear_secret_cache()

    def test_environment_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        secrets = tmp_path / ".env.secrets"
        secrets.write_text("OPENAI_API_KEY=from-file\n", encoding="utf-8")
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")

        assert fetch_secret("OPENAI_API_KEY", secrets_path=secrets) == "from-env"

    def test_secrets_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        secrets = tmp_path / ".env.secrets"
        secrets.write_text("TURNLOOP_TEST_KEY=sk-test\n", encoding="utf-8")
        monkeypatch.delenv("TURNLOOP_TEST_KEY", raising=False)

        assert fetch_secret("TURNLOOP_TEST_KEY", secrets_path=secrets) == "sk-test"

    def test_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TURNLOOP_MISSING_KEY", raising=False)

        assert fetch_secret("TURNLOOP_MISSING_KEY", "fallback", secrets_path=tmp_path / "none") == "fallback"

    def test_working_dir_overrides_user_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        user_dir = tmp_path / "xdg" / "turnloop"
        user_dir.mkdir(parents=True)
        (user_dir / ".env.secrets").write_text("A_KEY=user\nB_KEY=user\n", encoding="utf-8")
        work = tmp_path / "work"
        work.mkdir()
        (work / ".env.secrets").write_text("A_KEY=project\n", encoding="utf-8")
        monkeypatch.chdir(work)
        monkeypatch.delenv("A_KEY", raising=False)
        monkeypatch.delenv("B_KEY", raising=False)

        assert get_secrets_paths()[0] == user_dir / ".env.secrets"
        assert fetch_secret("A_KEY") == "project"
        assert fetch_secret("B_KEY") == "user"


class TestLogging:
    """Test log level resolution and session tagging."""

    @pytest.mark.parametrize(
        "config,expected",
        [
            (None, logging.INFO),
            (LoggingConfig(level="debug"), logging.DEBUG),
            (LoggingConfig(level="nonsense"), logging.INFO),
            (LoggingConfig(verbose=0), logging.ERROR),
            (LoggingConfig(verbose=3, level="ERROR"), VERBOSE),
            (LoggingConfig(verbose=9), TRACE),
        ],
    )
    def test_resolve_level(self, config, expected) -> None:
        assert resolve_level(config) == expected

    def test_session_logger_tags_records(self, caplog) -> None:
        with caplog.at_level(logging.INFO, logger="turnloop"):
            session_logger("team/alice").info("hello")

        record = caplog.records[-1]
        assert record.name == "turnloop.session"
        assert record.session_id == "team/alice"
        formatter = _SessionFormatter("%(levelname)s %(name)s%(session_tag)s: %(message)s")
        assert formatter.format(record) == "info turnloop.session [team/alice]: hello"


@pytest.fixture
def fresh_logging(monkeypatch: pytest.MonkeyPatch):
    """Let setup_logging run again and drop the handlers it installs."""
    root = turnloop_logging.logger
    monkeypatch.setattr(turnloop_logging, "_initialized", False)
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Test handler installation from LoggingConfig."""

    def test_file_handler_writes_tagged_records(self, fresh_logging, tmp_path: Path) -> None:
        log_file = tmp_path / "turnloop.log"
        setup_logging(LoggingConfig(level="debug", file=str(log_file)))
        setup_logging(LoggingConfig(level="error"))

        assert fresh_logging.level == logging.DEBUG
        session_logger("s1").debug("turn started")
        for handler in fresh_logging.handlers:
            handler.flush()
        assert "debug turnloop.session [s1]: turn started" in log_file.read_text(encoding="utf-8")

    def test_unopenable_file_falls_back_to_stderr(self, fresh_logging, tmp_path: Path, caplog) -> None:
        handlers = len(fresh_logging.handlers)
        with caplog.at_level(logging.WARNING, logger="turnloop"):
            setup_logging(LoggingConfig(file=str(tmp_path / "missing" / "turnloop.log")))

        added = fresh_logging.handlers[handlers:]
        assert len(added) == 1
        assert isinstance(added[0], logging.StreamHandler)
        assert "Failed to open log file" in caplog.text
