"""Tests for workspace name validation and resolution."""

import pytest

from terraplan import ValidationError
from terraplan.naming import (
    DEFAULT_WORKSPACE,
    MAX_WORKSPACE_LENGTH,
    WORKSPACE_ENV_VAR,
    resolve_workspace_name,
    validate_workspace_name,
)


class TestValidateWorkspaceName:
    """Tests for validate_workspace_name."""

    @pytest.mark.parametrize("name", ["default", "prod", "team_a.staging-2", "1st"])
    def test_valid(self, name):
        validate_workspace_name(name)

    @pytest.mark.parametrize(
        ("name", "reason"),
        [
            ("", "empty"),
            ("a/b", "path separator"),
            ("a\\b", "path separator"),
            ("a..b", "'..'"),
            ("-lead", "Must start"),
            ("has space", "Must start"),
        ],
    )
    def test_invalid(self, name, reason):
        with pytest.raises(ValidationError) as exc_info:
            validate_workspace_name(name)
        assert reason in exc_info.value.reason

    def test_length_limit(self):
        validate_workspace_name("a" * MAX_WORKSPACE_LENGTH)
        with pytest.raises(ValidationError, match="Too long"):
            validate_workspace_name("a" * (MAX_WORKSPACE_LENGTH + 1))


class TestResolveWorkspaceName:
    """Tests for resolve_workspace_name."""

    def test_explicit_wins(self, monkeypatch):
        monkeypatch.setenv(WORKSPACE_ENV_VAR, "from-env")
        assert resolve_workspace_name("explicit") == "explicit"

    def test_env_var(self, monkeypatch):
        monkeypatch.setenv(WORKSPACE_ENV_VAR, "from-env")
        assert resolve_workspace_name(None) == "from-env"

    def test_default(self, monkeypatch):
        monkeypatch.delenv(WORKSPACE_ENV_VAR, raising=False)
        assert resolve_workspace_name(None) == DEFAULT_WORKSPACE

    def test_validates(self, monkeypatch):
        monkeypatch.setenv(WORKSPACE_ENV_VAR, "bad/name")
        with pytest.raises(ValidationError):
            resolve_workspace_name(None)
