"""
Certificate expiry notifier.

This package contains:
- config_loader: Configuration and policy loading and validation
- logger: Centralized logging setup
- helpers: Expiry evaluation and certificate selection
- secrets: Credential resolution
- certificates: Certificate sources
- notification: Channel notifiers and the notification dispatcher
- scheduler: Reconciliation cycles and periodic scheduling
- kube: Kubernetes client setup and CertNotification policies
"""

from .logger import setup_logger, get_logger
from .config_loader import (
    load_config,
    parse_policy,
    Config,
    Settings,
    ConfigurationError,
    CredentialReference,
    NotificationPolicy,
    EmailChannelConfig,
    ChatChannelConfig,
    MessagingChannelConfig,
)
from .helpers import (
    evaluate_expiry,
    days_to_expiry,
    format_expiration_status,
    build_message,
    select_certificates,
    SelectionResult,
    SelectionReason,
)
from .secrets import (
    CredentialResolver,
    KubernetesSecretResolver,
    EnvironmentSecretResolver,
    CredentialError,
    SecretNotFoundError,
    SecretKeyNotFoundError,
)
from .certificates import (
    MonitoredCertificate,
    CertificateSource,
    CertManagerCertificateSource,
    KeyVaultCertificateSource,
    PemDirectoryCertificateSource,
    CertificateSourceError,
)
from .notification import (
    ChannelNotifier,
    EmailNotifier,
    ChatNotifier,
    MessagingNotifier,
    NotificationDispatcher,
    NotificationOutcome,
    DispatchResult,
    DispatchError,
    TransportError,
    CycleCancelledError,
)
from .scheduler import (
    ReconciliationScheduler,
    SchedulerState,
    CycleResult,
    ExponentialBackoff,
    PolicyJob,
    PolicyRunner,
)

__all__ = [
    # Logger
    "setup_logger",
    "get_logger",
    # Config
    "load_config",
    "parse_policy",
    "Config",
    "Settings",
    "ConfigurationError",
    "CredentialReference",
    "NotificationPolicy",
    "EmailChannelConfig",
    "ChatChannelConfig",
    "MessagingChannelConfig",
    # Helpers
    "evaluate_expiry",
    "days_to_expiry",
    "format_expiration_status",
    "build_message",
    "select_certificates",
    "SelectionResult",
    "SelectionReason",
    # Secrets
    "CredentialResolver",
    "KubernetesSecretResolver",
    "EnvironmentSecretResolver",
    "CredentialError",
    "SecretNotFoundError",
    "SecretKeyNotFoundError",
    # Certificates
    "MonitoredCertificate",
    "CertificateSource",
    "CertManagerCertificateSource",
    "KeyVaultCertificateSource",
    "PemDirectoryCertificateSource",
    "CertificateSourceError",
    # Notifications
    "ChannelNotifier",
    "EmailNotifier",
    "ChatNotifier",
    "MessagingNotifier",
    "NotificationDispatcher",
    "NotificationOutcome",
    "DispatchResult",
    "DispatchError",
    "TransportError",
    "CycleCancelledError",
    # Scheduler
    "ReconciliationScheduler",
    "SchedulerState",
    "CycleResult",
    "ExponentialBackoff",
    "PolicyJob",
    "PolicyRunner",
]
