"""Shared fixtures: in-memory secret store, certificate source and recording notifiers."""

from datetime import datetime, timedelta, timezone

import pytest

from certnotifier.certificates import CertificateSource, MonitoredCertificate
from certnotifier.config_loader import (
    ChatChannelConfig,
    CredentialReference,
    EmailChannelConfig,
    MessagingChannelConfig,
    NotificationPolicy,
)
from certnotifier.notification import ChannelNotifier, NotificationDispatcher, TransportError
from certnotifier.secrets import (
    CredentialResolver,
    SecretKeyNotFoundError,
    SecretNotFoundError,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class InMemorySecretStore(CredentialResolver):
    """Secrets keyed by (scope, name) -> {key: value}."""

    def __init__(self, secrets=None):
        self.secrets = dict(secrets or {})
        self.lookups = []

    def resolve(self, ref, default_scope):
        scope = self.scope_for(ref, default_scope)
        self.lookups.append((scope, ref.name, ref.key))
        if (scope, ref.name) not in self.secrets:
            raise SecretNotFoundError(ref.name, scope)
        data = self.secrets[(scope, ref.name)]
        if ref.key not in data:
            raise SecretKeyNotFoundError(ref.key, ref.name, scope)
        return data[ref.key]


class StaticCertificateSource(CertificateSource):
    def __init__(self, certificates=None):
        self.certificates = list(certificates or [])
        self.calls = 0

    def list_certificates(self):
        self.calls += 1
        return list(self.certificates)


class RecordingNotifier(ChannelNotifier):
    """Notifier that records sends into a shared journal and optionally fails."""

    def __init__(self, channel, config, journal, fail_channels):
        self.channel = channel
        self.config = config
        self.journal = journal
        self.fail_channels = fail_channels

    @property
    def credential_reference(self):
        return {
            "email": lambda c: c.password,
            "chat": lambda c: c.token,
            "messaging": lambda c: c.bot_token,
        }[self.channel](self.config)

    def send(self, credential, message):
        self.journal.append((self.channel, credential, message))
        if self.channel in self.fail_channels:
            raise TransportError(self.channel, "provider rejected the message")


class Recorder:
    """Factories producing RecordingNotifiers plus the journal they write to."""

    def __init__(self):
        self.journal = []
        self.fail_channels = set()

    @property
    def channels(self):
        return [entry[0] for entry in self.journal]

    def factories(self):
        def make(channel):
            return lambda config, timeout: RecordingNotifier(
                channel, config, self.journal, self.fail_channels
            )
        return {name: make(name) for name in ("email", "chat", "messaging")}


def make_certificate(name, days, namespace="apps"):
    not_after = None if days is None else NOW + timedelta(days=days)
    return MonitoredCertificate(name=name, not_after=not_after, namespace=namespace)


def make_policy(threshold=30, email=True, chat=True, messaging=True, **kwargs):
    return NotificationPolicy(
        name=kwargs.pop("name", "team-a"),
        namespace=kwargs.pop("namespace", "monitoring"),
        expiry_threshold_days=threshold,
        email=EmailChannelConfig(
            from_address="alerts@example.com",
            password=CredentialReference("smtp", "password"),
            to_address="oncall@example.com",
            smtp_host="smtp.example.com",
        ) if email else None,
        chat=ChatChannelConfig(
            token=CredentialReference("slack", "token"),
            channel_id="C123",
        ) if chat else None,
        messaging=MessagingChannelConfig(
            bot_token=CredentialReference("telegram", "token"),
            chat_id=42,
        ) if messaging else None,
        **kwargs,
    )


@pytest.fixture
def secret_store():
    return InMemorySecretStore({
        ("monitoring", "smtp"): {"password": "smtp-pass"},
        ("monitoring", "slack"): {"token": "xoxb-token"},
        ("monitoring", "telegram"): {"token": "123:abc"},
    })


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def dispatcher(secret_store, recorder):
    return NotificationDispatcher(secret_store, notifier_factories=recorder.factories())
