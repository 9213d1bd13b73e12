"""Tests for certnotifier.config_loader: YAML loading and policy validation."""

import textwrap

import pytest

from certnotifier.config_loader import (
    ConfigurationError,
    CredentialReference,
    load_config,
    parse_policy,
)


def write_config(tmp_path, content, name="config.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(content))
    return str(path)


VALID_CONFIG = """
settings:
  certificate_source: cert-manager
  secret_store: kubernetes
policies:
  - name: platform
    namespace: platform
    expiry_threshold_days: 30
    ignore_certificates: staging-tls
    email:
      from_address: alerts@example.com
      to_address: oncall@example.com
      smtp_host: smtp.example.com
      smtp_port: "2525"
      password:
        name: smtp
        key: password
    chat:
      channel_id: C123
      token: {name: slack, key: token}
    messaging:
      chat_id: -100123
      bot_token: {name: telegram, key: token, scope: shared}
"""


class TestLoadConfig:
    def test_valid_config(self, tmp_path):
        config = load_config(write_config(tmp_path, VALID_CONFIG))

        assert config.settings.certificate_source == "cert-manager"
        assert config.settings.requeue_interval_hours == 24
        assert len(config.policies) == 1

        policy = config.policies[0]
        assert policy.identity == "platform/platform"
        assert policy.expiry_threshold_days == 30
        assert policy.ignore_certificates == ["staging-tls"]
        assert policy.continue_on_error is False
        assert policy.email.smtp_port == 2525
        assert policy.email.password == CredentialReference("smtp", "password")
        assert policy.chat.channel_id == "C123"
        assert policy.messaging.chat_id == -100123
        assert policy.messaging.bot_token.scope == "shared"
        assert policy.configured_channels() == ["email", "chat", "messaging"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_wrong_extension(self, tmp_path):
        with pytest.raises(ConfigurationError, match="must be YAML"):
            load_config(write_config(tmp_path, VALID_CONFIG, name="config.json"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(write_config(tmp_path, "policies: [unclosed"))

    def test_empty_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="empty"):
            load_config(write_config(tmp_path, ""))

    def test_requires_a_policy_for_config_source(self, tmp_path):
        with pytest.raises(ConfigurationError, match="At least one policy"):
            load_config(write_config(tmp_path, "settings: {}\n"))

    def test_kubernetes_policy_source_needs_no_policies(self, tmp_path):
        config = load_config(write_config(tmp_path, "settings:\n  policy_source: kubernetes\n"))
        assert config.policies == []

    def test_env_expansion(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ALERT_CHANNEL", "C999")
        content = """
        policies:
          - name: p
            expiry_threshold_days: 5
            chat:
              channel_id: ${ALERT_CHANNEL}
              token: {name: slack, key: token}
        """
        config = load_config(write_config(tmp_path, content))
        assert config.policies[0].chat.channel_id == "C999"
        assert config.policies[0].namespace == "default"

    def test_duplicate_policies_rejected(self, tmp_path):
        content = """
        policies:
          - {name: p, expiry_threshold_days: 5}
          - {name: p, expiry_threshold_days: 6}
        """
        with pytest.raises(ConfigurationError, match="Duplicate"):
            load_config(write_config(tmp_path, content))

    @pytest.mark.parametrize("settings, message", [
        ("certificate_source: vault", "certificate_source"),
        ("secret_store: s3", "secret_store"),
        ("policy_source: etcd", "policy_source"),
        ("certificate_source: keyvault", "keyvault_urls"),
        ("certificate_source: keyvault\n  keyvault_urls: [http://kv]", "https://"),
        ("certificate_source: pem-directory", "pem_directory"),
        ("requeue_interval_hours: 0", "requeue_interval_hours"),
        ("request_timeout_seconds: -1", "request_timeout_seconds"),
        ("initial_backoff_seconds: 600\n  max_backoff_seconds: 60", "max_backoff_seconds"),
    ])
    def test_invalid_settings(self, tmp_path, settings, message):
        content = f"settings:\n  {settings}\npolicies:\n  - {{name: p, expiry_threshold_days: 1}}\n"
        with pytest.raises(ConfigurationError, match=message):
            load_config(write_config(tmp_path, content))


class TestParsePolicy:
    def test_negative_threshold_rejected(self):
        with pytest.raises(ConfigurationError, match="must not be negative"):
            parse_policy({"name": "p", "expiry_threshold_days": -1})

    def test_zero_threshold_allowed(self):
        assert parse_policy({"name": "p", "expiry_threshold_days": 0}).expiry_threshold_days == 0

    def test_threshold_required(self):
        with pytest.raises(ConfigurationError, match="expiry_threshold_days is required"):
            parse_policy({"name": "p"})

    def test_threshold_must_be_integer(self):
        with pytest.raises(ConfigurationError, match="must be an integer"):
            parse_policy({"name": "p", "expiry_threshold_days": "soon"})

    def test_name_required(self):
        with pytest.raises(ConfigurationError, match="name is required"):
            parse_policy({"expiry_threshold_days": 1})

    def test_no_channels(self):
        policy = parse_policy({"name": "p", "expiry_threshold_days": 1})
        assert policy.configured_channels() == []

    def test_empty_channel_sections_are_not_configured(self):
        policy = parse_policy({
            "name": "p",
            "expiry_threshold_days": 1,
            "email": {},
            "chat": {"channel_id": "", "token": None},
            "messaging": {"chat_id": 0},
        })
        assert policy.configured_channels() == []

    def test_partial_email_rejected(self):
        with pytest.raises(ConfigurationError, match="smtp_host"):
            parse_policy({
                "name": "p",
                "expiry_threshold_days": 1,
                "email": {
                    "from_address": "a@example.com",
                    "to_address": "b@example.com",
                    "password": {"name": "smtp", "key": "password"},
                },
            })

    def test_chat_without_token_rejected(self):
        with pytest.raises(ConfigurationError, match="token"):
            parse_policy({"name": "p", "expiry_threshold_days": 1, "chat": {"channel_id": "C1"}})

    def test_messaging_without_chat_id_rejected(self):
        with pytest.raises(ConfigurationError, match="chat_id"):
            parse_policy({
                "name": "p",
                "expiry_threshold_days": 1,
                "messaging": {"bot_token": {"name": "tg", "key": "token"}},
            })

    def test_credential_reference_needs_name_and_key(self):
        with pytest.raises(ConfigurationError, match="both 'name' and 'key'"):
            parse_policy({
                "name": "p",
                "expiry_threshold_days": 1,
                "chat": {"channel_id": "C1", "token": {"name": "slack"}},
            })

    def test_email_defaults(self):
        policy = parse_policy({
            "name": "p",
            "expiry_threshold_days": 1,
            "email": {
                "from": "a@example.com",
                "to": "b@example.com",
                "smtp_host": "smtp.example.com",
                "password": {"name": "smtp", "key": "password"},
            },
        })
        assert policy.email.smtp_port == 587
        assert policy.email.use_tls is True
        assert policy.email.from_address == "a@example.com"

    @pytest.mark.parametrize("section, value", [
        ("email", "smtp.example.com"),
        ("chat", ["C123"]),
        ("messaging", 42),
    ])
    def test_non_mapping_channel_section_rejected(self, section, value):
        with pytest.raises(ConfigurationError, match=f"'{section}' in policy default/p must be a mapping"):
            parse_policy({"name": "p", "expiry_threshold_days": 1, section: value})


class TestMalformedSections:
    def test_scalar_channel_section_is_configuration_error(self, tmp_path):
        content = """
        policies:
          - name: p
            expiry_threshold_days: 5
            email: smtp.example.com
        """
        with pytest.raises(ConfigurationError, match="'email'"):
            load_config(write_config(tmp_path, content))

    def test_settings_must_be_mapping(self, tmp_path):
        content = """
        settings: [cert-manager]
        policies:
          - {name: p, expiry_threshold_days: 1}
        """
        with pytest.raises(ConfigurationError, match="'settings'"):
            load_config(write_config(tmp_path, content))

    def test_keyvault_urls_must_be_list_of_urls(self, tmp_path):
        content = """
        settings:
          certificate_source: keyvault
          keyvault_urls: {prod: https://kv.vault.azure.net}
        policies:
          - {name: p, expiry_threshold_days: 1}
        """
        with pytest.raises(ConfigurationError, match="keyvault_urls"):
            load_config(write_config(tmp_path, content))
