"""Tests for kb_mirror.config_loader: hierarchical config loading."""

import textwrap

import pytest
import yaml

from kb_mirror import config_loader
from kb_mirror.config_loader import (
    _interpolate_recursive,
    _load_yaml_with_includes,
    discover_config_files,
    ensure_config,
    interpolate_env_vars,
    load_hierarchical_config,
    resolve_config_path,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run in an empty CWD with a fake HOME and no KB_MIRROR_CONFIG."""
    monkeypatch.delenv("KB_MIRROR_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(textwrap.dedent(text))
    return path


# -------------------------------------------------------------------------
# Env var interpolation
# -------------------------------------------------------------------------


class TestInterpolateEnvVars:
    """Tests for ${VAR} and ${VAR:-default} substitution."""

    def test_replaces_set_var(self, monkeypatch):
        monkeypatch.setenv("KB_SESSION_COOKIE", "_session=abc")
        assert interpolate_env_vars("${KB_SESSION_COOKIE}") == "_session=abc"

    def test_unset_var_replaced_with_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        assert interpolate_env_vars("${UNSET_VAR_XYZ}") == ""

    def test_default_used_when_unset_or_empty(self, monkeypatch):
        monkeypatch.delenv("UNSET_VAR_XYZ", raising=False)
        monkeypatch.setenv("EMPTY_VAR", "")
        assert interpolate_env_vars("${UNSET_VAR_XYZ:-~/kb}") == "~/kb"
        assert interpolate_env_vars("${EMPTY_VAR:-fallback}") == "fallback"

    def test_multiple_vars_in_one_string(self, monkeypatch):
        monkeypatch.setenv("KB_HOST", "kb.local")
        monkeypatch.setenv("KB_PORT", "8443")
        assert (
            interpolate_env_vars("https://${KB_HOST}:${KB_PORT}")
            == "https://kb.local:8443"
        )

    def test_literal_dollar_brace_no_closing(self):
        assert interpolate_env_vars("${NO_CLOSE") == "${NO_CLOSE"

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("KB_ROOT", "/data/kb")
        data = {"sync": {"cache_root": "${KB_ROOT}", "max_retries": 2}, "x": ["${KB_ROOT}", 1]}
        assert _interpolate_recursive(data) == {
            "sync": {"cache_root": "/data/kb", "max_retries": 2},
            "x": ["/data/kb", 1],
        }


# -------------------------------------------------------------------------
# YAML !include support
# -------------------------------------------------------------------------


class TestIncludeDirective:
    """Tests for !include YAML loading via the ConfigLoader subclass."""

    def test_include_relative_file(self, tmp_path):
        _write(tmp_path / "secrets.yml", "cookie: _session=abc\n")
        main = _write(tmp_path / "config.yml", "remote: !include secrets.yml\n")
        assert _load_yaml_with_includes(main) == {
            "remote": {"cookie": "_session=abc"}
        }

    def test_include_absolute_path(self, tmp_path):
        secrets = _write(tmp_path / "abs.yml", "cookie: c\n")
        main = _write(tmp_path / "config.yml", f"remote: !include {secrets}\n")
        assert _load_yaml_with_includes(main) == {"remote": {"cookie": "c"}}

    def test_include_nonexistent_raises(self, tmp_path):
        main = _write(tmp_path / "config.yml", "data: !include missing.yml\n")
        with pytest.raises(FileNotFoundError, match="missing.yml"):
            _load_yaml_with_includes(main)

    def test_circular_include_raises(self, tmp_path):
        a = _write(tmp_path / "a.yml", "x: !include b.yml\n")
        _write(tmp_path / "b.yml", "y: !include a.yml\n")
        with pytest.raises(ValueError, match="Circular include"):
            _load_yaml_with_includes(a)

    def test_nested_includes(self, tmp_path):
        _write(tmp_path / "c.yml", "val: deep\n")
        _write(tmp_path / "b.yml", "inner: !include c.yml\n")
        a = _write(tmp_path / "a.yml", "outer: !include b.yml\n")
        assert _load_yaml_with_includes(a) == {"outer": {"inner": {"val": "deep"}}}

    def test_global_safe_loader_not_polluted(self, tmp_path):
        cfg = _write(tmp_path / "test.yml", "x: !include other.yml\n")
        with pytest.raises(yaml.constructor.ConstructorError):
            with open(cfg) as fh:
                yaml.safe_load(fh)


# -------------------------------------------------------------------------
# Convention-based file discovery
# -------------------------------------------------------------------------


class TestDiscoverConfigFiles:
    def test_empty_filesystem_returns_empty(self, isolated):
        assert discover_config_files() == []

    def test_env_var_takes_highest_precedence(self, isolated, monkeypatch):
        project = _write(isolated / ".kb_mirror" / "config.yml", "a: 1\n")
        custom = _write(isolated / "custom.yml", "b: 2\n")
        monkeypatch.setenv("KB_MIRROR_CONFIG", str(custom))
        assert discover_config_files() == [custom.resolve(), project]

    def test_project_before_global(self, isolated):
        global_cfg = _write(
            isolated / "home" / ".config" / "kb_mirror" / "config.yml", "g: 1\n"
        )
        yaml_ext = _write(isolated / ".kb_mirror" / "config.yaml", "y: 1\n")
        project = _write(isolated / ".kb_mirror" / "config.yml", "p: 1\n")
        assert discover_config_files() == [project, yaml_ext, global_cfg]


# -------------------------------------------------------------------------
# Hierarchical merge
# -------------------------------------------------------------------------


class TestLoadHierarchicalConfig:
    def test_zero_config_returns_empty_dict(self, isolated):
        assert load_hierarchical_config() == {}

    def test_project_replaces_global_sections(self, isolated):
        _write(
            isolated / "home" / ".config" / "kb_mirror" / "config.yml",
            """\
            remote:
              url: https://global.example.com
              cookie: global
            sync:
              max_concurrency: 2
            """,
        )
        _write(
            isolated / ".kb_mirror" / "config.yml",
            """\
            remote:
              url: https://project.example.com
            """,
        )
        result = load_hierarchical_config()
        assert result["remote"] == {"url": "https://project.example.com"}
        assert result["sync"] == {"max_concurrency": 2}

    def test_env_var_interpolation_after_merge(self, isolated, monkeypatch):
        monkeypatch.setenv("KB_SESSION_COOKIE", "_session=xyz")
        _write(
            isolated / ".kb_mirror" / "config.yml",
            """\
            remote:
              cookie: "${KB_SESSION_COOKIE}"
            """,
        )
        assert load_hierarchical_config()["remote"]["cookie"] == "_session=xyz"

    def test_non_dict_root_skipped(self, isolated, monkeypatch):
        bad = _write(isolated / "bad.yml", "- item1\n- item2\n")
        monkeypatch.setenv("KB_MIRROR_CONFIG", str(bad))
        assert load_hierarchical_config() == {}

    def test_broken_yaml_raises(self, isolated):
        _write(isolated / ".kb_mirror" / "config.yml", "remote: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_hierarchical_config()


# -------------------------------------------------------------------------
# Config bootstrapping
# -------------------------------------------------------------------------


class TestResolveConfigPath:
    def test_returns_highest_precedence(self, isolated):
        project = _write(isolated / ".kb_mirror" / "config.yml", "a: 1\n")
        assert resolve_config_path() == project

    def test_returns_default_when_no_files(self, isolated):
        assert resolve_config_path() == isolated / ".kb_mirror" / "config.yml"


class TestEnsureConfig:
    def test_noop_when_exists(self, isolated):
        existing = _write(isolated / ".kb_mirror" / "config.yml", "a: 1\n")
        assert ensure_config() == existing
        assert existing.read_text() == "a: 1\n"

    def test_creates_starter_file(self, isolated):
        result = ensure_config()
        assert result == isolated / ".kb_mirror" / "config.yml"
        content = result.read_text()
        assert "# kb-mirror configuration" in content
        assert "# remote:" in content
        assert "# sync:" in content
        assert "# logging:" in content
        assert yaml.safe_load(content) is None

    def test_explicit_target(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config_loader, "discover_config_files", lambda: [])
        target = tmp_path / "a" / "b" / "my-config.yml"
        assert ensure_config(target=target) == target
        assert target.is_file()
