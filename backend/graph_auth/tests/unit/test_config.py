"""
Unit tests for configuration.

Tests cover:
- OAuthSettings.from_env defaults and validation
- Strict state cannot be relaxed in production
- ScopePolicyLoader YAML loading and singleton behaviour
"""

import pytest

from graph_auth.config.scope_policy import (
    ScopePolicyLoader,
    get_scope_policy_loader,
    reset_scope_policy_loader,
)
from graph_auth.config.settings import (
    DEFAULT_LONG_LIVED_TTL_SECONDS,
    OAuthSettings,
)

REQUIRED_ENV = {
    "FB_APP_ID": "1234567890",
    "FB_APP_SECRET": "app-secret",
    "FB_REDIRECT_URI": "https://app.example.com/auth/instagram/callback",
}

OPTIONAL_ENV = [
    "ENV",
    "OAUTH_STRICT_STATE",
    "GRAPH_API_VERSION",
    "GRAPH_MAX_RETRIES",
    "REPLAY_GUARD_BACKEND",
    "ROTATION_THRESHOLD_DAYS",
    "DEFAULT_LONG_LIVED_TTL_SECONDS",
    "OAUTH_STATE_TTL_SECONDS",
    "OAUTH_CODE_RETENTION_SECONDS",
    "OAUTH_CALLBACK_TIMEOUT_SECONDS",
]


@pytest.fixture
def oauth_env(monkeypatch):
    for name in OPTIONAL_ENV:
        monkeypatch.delenv(name, raising=False)
    for name, value in REQUIRED_ENV.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


class TestOAuthSettings:
    """Tests for environment settings."""

    def test_defaults(self, oauth_env):
        settings = OAuthSettings.from_env()

        assert settings.app_id == "1234567890"
        assert settings.graph_api_version == "v19.0"
        assert settings.strict_state is True
        assert settings.state_ttl_seconds == 600
        assert settings.max_retries == 3
        assert settings.default_long_lived_ttl_seconds == DEFAULT_LONG_LIVED_TTL_SECONDS == 5184000
        assert settings.rotation_threshold_days == 7
        assert settings.replay_backend == "database"
        assert settings.code_retention_seconds == 86400
        assert settings.callback_timeout_seconds == 60.0

    def test_app_secret_not_in_repr(self, oauth_env):
        assert "app-secret" not in repr(OAuthSettings.from_env())

    @pytest.mark.parametrize("missing", sorted(REQUIRED_ENV))
    def test_missing_required_value(self, oauth_env, missing):
        oauth_env.delenv(missing)

        with pytest.raises(ValueError, match=missing):
            OAuthSettings.from_env()

    def test_relaxed_state_allowed_outside_production(self, oauth_env):
        oauth_env.setenv("ENV", "test")
        oauth_env.setenv("OAUTH_STRICT_STATE", "false")

        assert OAuthSettings.from_env().strict_state is False

    @pytest.mark.security
    def test_relaxed_state_refused_in_production(self, oauth_env):
        oauth_env.setenv("ENV", "production")
        oauth_env.setenv("OAUTH_STRICT_STATE", "false")

        with pytest.raises(ValueError, match="OAUTH_STRICT_STATE"):
            OAuthSettings.from_env()

    def test_unknown_replay_backend(self, oauth_env):
        oauth_env.setenv("REPLAY_GUARD_BACKEND", "redis")

        with pytest.raises(ValueError, match="REPLAY_GUARD_BACKEND"):
            OAuthSettings.from_env()

    def test_callback_timeout_from_env(self, oauth_env):
        oauth_env.setenv("OAUTH_CALLBACK_TIMEOUT_SECONDS", "12.5")

        assert OAuthSettings.from_env().callback_timeout_seconds == 12.5

    def test_code_retention_shorter_than_state_ttl(self, oauth_env):
        oauth_env.setenv("OAUTH_CODE_RETENTION_SECONDS", "60")

        with pytest.raises(ValueError, match="OAUTH_CODE_RETENTION_SECONDS"):
            OAuthSettings.from_env()

    def test_non_numeric_value(self, oauth_env):
        oauth_env.setenv("GRAPH_MAX_RETRIES", "three")

        with pytest.raises(ValueError, match="GRAPH_MAX_RETRIES"):
            OAuthSettings.from_env()

    def test_invalid_boolean(self, oauth_env):
        oauth_env.setenv("OAUTH_STRICT_STATE", "maybe")

        with pytest.raises(ValueError, match="OAUTH_STRICT_STATE"):
            OAuthSettings.from_env()


class TestScopePolicyLoader:
    """Tests for the YAML scope policy."""

    def test_bundled_policy(self):
        loader = get_scope_policy_loader()

        assert loader.required_scopes == [
            "public_profile",
            "email",
            "pages_show_list",
            "pages_read_engagement",
            "instagram_basic",
            "instagram_manage_insights",
        ]
        assert "instagram_content_publish" in loader.recommended_scopes
        assert loader.capability_buckets is None
        assert loader.thresholds == (50, 75)

    def test_singleton(self):
        assert get_scope_policy_loader() is get_scope_policy_loader()

    def test_custom_file(self, tmp_path):
        path = tmp_path / "policy.yml"
        path.write_text(
            "required_scopes: [a_scope, b_scope]\n"
            "recommended_scopes: [c_scope]\n"
            "capability_buckets:\n"
            "  reading: [a_scope, b_scope]\n"
            "thresholds:\n"
            "  insufficient_below: 40\n"
            "  sufficient_from: 80\n"
        )

        loader = ScopePolicyLoader(str(path))

        assert loader.required_scopes == ["a_scope", "b_scope"]
        assert loader.authorize_scopes == ["a_scope", "b_scope", "c_scope"]
        assert loader.capability_buckets == [("a_scope", "b_scope")]
        assert loader.thresholds == (40, 80)

    def test_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "policy.yml"
        path.write_text("required_scopes: [only_scope]\n")
        monkeypatch.setenv("SCOPE_POLICY_PATH", str(path))
        reset_scope_policy_loader()

        assert get_scope_policy_loader().required_scopes == ["only_scope"]

    def test_reload(self, tmp_path):
        path = tmp_path / "policy.yml"
        path.write_text("required_scopes: [first_scope]\n")
        loader = ScopePolicyLoader(str(path))

        path.write_text("required_scopes: [second_scope]\n")
        loader.reload()

        assert loader.required_scopes == ["second_scope"]
