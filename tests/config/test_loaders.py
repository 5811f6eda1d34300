"""
Unit tests for config.loaders module.

Tests cover:
- Path resolution (relative vs absolute)
- YAML loading with environment variable expansion
- Error handling (missing files, invalid YAML, non-mapping documents)
"""

import os
import pytest
import yaml
from pathlib import Path

import voipfix
from voipfix.config.loaders import resolve_config_path, load_yaml_with_env_expansion


PROJECT_ROOT = Path(voipfix.__file__).parent.parent.resolve()


class TestResolveConfigPath:
    """Tests for resolve_config_path function."""

    def test_absolute_path_unchanged(self):
        """Absolute paths should be returned unchanged."""
        abs_path = "/etc/voipfix/voipfix.yaml"
        assert resolve_config_path(abs_path) == abs_path

    def test_relative_path_resolved_against_project_root(self):
        """Relative paths should be resolved relative to the project root."""
        result = resolve_config_path("config/voipfix.yaml")

        assert os.path.isabs(result)
        assert result == os.path.join(PROJECT_ROOT, "config/voipfix.yaml")

    def test_bundled_config_exists(self):
        """The default path points at the shipped configuration file."""
        assert os.path.isfile(resolve_config_path("config/voipfix.yaml"))


class TestLoadYamlWithEnvExpansion:
    """Tests for load_yaml_with_env_expansion function."""

    def test_load_simple_yaml(self, tmp_path):
        """Should load nested YAML without env vars."""
        config_file = tmp_path / "voipfix.yaml"
        config_file.write_text("""
enabled: true
recovery:
  poll_interval_ms: 250
  speaker_fix_offsets_ms: [300, 600]
""")

        result = load_yaml_with_env_expansion(str(config_file))

        assert result['enabled'] is True
        assert result['recovery']['poll_interval_ms'] == 250
        assert result['recovery']['speaker_fix_offsets_ms'] == [300, 600]

    def test_env_var_expansion_dollar_brace(self, tmp_path, monkeypatch):
        """Should expand ${VAR} references before parsing."""
        monkeypatch.setenv("VOIPFIX_TEST_DEBOUNCE", "450")
        config_file = tmp_path / "voipfix.yaml"
        config_file.write_text("""
recovery:
  speaker_debounce_ms: ${VOIPFIX_TEST_DEBOUNCE}
""")

        result = load_yaml_with_env_expansion(str(config_file))

        # YAML parser converts numeric strings to int
        assert result['recovery']['speaker_debounce_ms'] == 450

    def test_env_var_expansion_dollar_only(self, tmp_path, monkeypatch):
        """Should expand $VAR references."""
        monkeypatch.setenv("VOIPFIX_TEST_HOST", "10.0.0.5")
        config_file = tmp_path / "voipfix.yaml"
        config_file.write_text("metrics:\n  host: $VOIPFIX_TEST_HOST\n")

        result = load_yaml_with_env_expansion(str(config_file))

        assert result['metrics']['host'] == '10.0.0.5'

    def test_missing_env_var_left_unchanged(self, tmp_path, monkeypatch):
        """Undefined variables are left as written."""
        monkeypatch.delenv("VOIPFIX_UNDEFINED_VAR", raising=False)
        config_file = tmp_path / "voipfix.yaml"
        config_file.write_text("logging:\n  level: ${VOIPFIX_UNDEFINED_VAR}\n")

        result = load_yaml_with_env_expansion(str(config_file))

        assert result['logging']['level'] == '${VOIPFIX_UNDEFINED_VAR}'

    def test_file_not_found_raises_error(self):
        """Should raise FileNotFoundError for missing files."""
        with pytest.raises(FileNotFoundError) as exc_info:
            load_yaml_with_env_expansion("/nonexistent/path/voipfix.yaml")

        assert "not found" in str(exc_info.value).lower()

    def test_invalid_yaml_raises_error(self, tmp_path):
        """Should raise YAMLError for invalid YAML syntax."""
        config_file = tmp_path / "invalid.yaml"
        config_file.write_text("""
recovery:
  poll_interval_ms: 500
    speaker_debounce_ms: 300
""")

        with pytest.raises(yaml.YAMLError) as exc_info:
            load_yaml_with_env_expansion(str(config_file))

        assert "parsing" in str(exc_info.value).lower()

    def test_empty_file_returns_empty_dict(self, tmp_path):
        """Empty YAML file should return empty dict."""
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")

        assert load_yaml_with_env_expansion(str(config_file)) == {}

    def test_non_mapping_root_rejected(self, tmp_path):
        """A list at the document root is not a configuration."""
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- 300\n- 600\n")

        with pytest.raises(TypeError):
            load_yaml_with_env_expansion(str(config_file))
