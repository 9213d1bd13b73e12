"""
Configuration loading, validation, and parsing.

Loads configuration from YAML files and provides typed access
to settings and notification policies.
"""

import os
import re
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional

import yaml

from .logger import get_logger


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


DEFAULT_NAMESPACE = "default"
DEFAULT_SMTP_PORT = 587

CERTIFICATE_SOURCES = ["cert-manager", "keyvault", "pem-directory"]
SECRET_STORES = ["kubernetes", "environment"]
POLICY_SOURCES = ["config", "kubernetes"]


@dataclass(frozen=True)
class CredentialReference:
    """
    Pointer to a key inside a named secret.

    Holds no secret material. When scope is None the credential is
    resolved in the namespace of the policy that uses it.
    """
    name: str = ""
    key: str = ""
    scope: Optional[str] = None

    def is_empty(self) -> bool:
        return not self.name and not self.key

    def __str__(self) -> str:
        scope = f"{self.scope}/" if self.scope else ""
        return f"{scope}{self.name}[{self.key}]"


@dataclass
class EmailChannelConfig:
    """SMTP email channel configuration."""
    from_address: str = ""
    password: CredentialReference = field(default_factory=CredentialReference)
    to_address: str = ""
    smtp_host: str = ""
    smtp_port: int = DEFAULT_SMTP_PORT
    use_tls: bool = True

    def is_configured(self) -> bool:
        return bool(
            self.from_address
            or self.to_address
            or self.smtp_host
            or not self.password.is_empty()
        )


@dataclass
class ChatChannelConfig:
    """Slack chat channel configuration."""
    token: CredentialReference = field(default_factory=CredentialReference)
    channel_id: str = ""

    def is_configured(self) -> bool:
        return bool(self.channel_id or not self.token.is_empty())


@dataclass
class MessagingChannelConfig:
    """Telegram messaging bot configuration."""
    bot_token: CredentialReference = field(default_factory=CredentialReference)
    chat_id: int = 0

    def is_configured(self) -> bool:
        return bool(self.chat_id or not self.bot_token.is_empty())


@dataclass
class NotificationPolicy:
    """
    A monitoring configuration: expiry threshold plus notification channels.

    Certificate selection behavior:
    - ignore_certificates: Always takes precedence. These certificates are never evaluated.
    - include_certificates: If empty, all certificates are evaluated (minus ignored).
                            If specified, ONLY these certificates are evaluated (minus ignored).
    """
    name: str
    expiry_threshold_days: int
    namespace: str = DEFAULT_NAMESPACE
    email: Optional[EmailChannelConfig] = None
    chat: Optional[ChatChannelConfig] = None
    messaging: Optional[MessagingChannelConfig] = None
    include_certificates: List[str] = field(default_factory=list)
    ignore_certificates: List[str] = field(default_factory=list)
    continue_on_error: bool = False

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    def configured_channels(self) -> List[str]:
        """Names of channels with a non-empty configuration, in dispatch order."""
        channels = []
        if self.email is not None and self.email.is_configured():
            channels.append("email")
        if self.chat is not None and self.chat.is_configured():
            channels.append("chat")
        if self.messaging is not None and self.messaging.is_configured():
            channels.append("messaging")
        return channels


@dataclass
class Settings:
    """Global settings."""
    certificate_source: str = "cert-manager"
    secret_store: str = "kubernetes"
    policy_source: str = "config"
    kubeconfig: Optional[str] = None
    certificate_namespace: Optional[str] = None  # None lists across all namespaces
    keyvault_urls: List[str] = field(default_factory=list)
    pem_directory: Optional[str] = None
    requeue_interval_hours: float = 24
    initial_backoff_seconds: float = 60
    max_backoff_seconds: float = 3600
    request_timeout_seconds: float = 30
    policy_refresh_seconds: float = 300
    dry_run: bool = False


@dataclass
class Config:
    """Root configuration object."""
    settings: Settings
    policies: List[NotificationPolicy] = field(default_factory=list)


def _expand_env_vars(value: Any) -> Any:
    """
    Expand environment variables in string values.

    Supports ${VAR_NAME} syntax. Unknown variables are left untouched.

    Args:
        value: Value to expand (string, dict, or list)

    Returns:
        Value with environment variables expanded
    """
    if isinstance(value, str):
        pattern = r"\$\{([^}]+)\}"

        def replace(match):
            var_name = match.group(1)
            return os.environ.get(var_name, match.group(0))

        return re.sub(pattern, replace, value)

    elif isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_expand_env_vars(item) for item in value]

    return value


def _parse_int(value: Any, field_name: str, context: str) -> int:
    """Convert a YAML scalar to int, rejecting booleans."""
    if isinstance(value, bool):
        raise ConfigurationError(f"{field_name} must be an integer in {context}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"{field_name} must be an integer in {context}, got {value!r}"
        )


def parse_credential_reference(data: Any, context: str) -> CredentialReference:
    """
    Parse a credential reference of the form {name, key, scope}.

    Args:
        data: Raw mapping from YAML (or None)
        context: Description used in error messages

    Returns:
        CredentialReference instance (empty when data is None)
    """
    if data is None:
        return CredentialReference()
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Credential reference in {context} must be a mapping with 'name' and 'key'"
        )

    ref = CredentialReference(
        name=str(data.get("name", "") or ""),
        key=str(data.get("key", "") or ""),
        scope=data.get("scope") or data.get("namespace"),
    )
    if not ref.is_empty() and (not ref.name or not ref.key):
        raise ConfigurationError(
            f"Credential reference in {context} requires both 'name' and 'key'"
        )
    return ref


def _require_mapping(data: Any, section: str, context: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"'{section}' in {context} must be a mapping, got {type(data).__name__}"
        )
    return data


def _parse_email(data: Any, context: str) -> Optional[EmailChannelConfig]:
    """
    Parse the email channel section of a policy.

    A section with every field empty means the channel is not configured.
    A section with some fields set must have all of them.

    Args:
        data: Raw email mapping (or None)
        context: Policy description used in error messages

    Returns:
        EmailChannelConfig, or None if the section is absent
    """
    if not data:
        return None
    data = _require_mapping(data, "email", context)

    config = EmailChannelConfig(
        from_address=data.get("from_address", data.get("from", "")) or "",
        password=parse_credential_reference(data.get("password"), f"{context} email"),
        to_address=data.get("to_address", data.get("to", "")) or "",
        smtp_host=data.get("smtp_host", "") or "",
        smtp_port=_parse_int(
            data.get("smtp_port", DEFAULT_SMTP_PORT) or DEFAULT_SMTP_PORT,
            "smtp_port",
            f"{context} email",
        ),
        use_tls=bool(data.get("use_tls", True)),
    )

    if config.is_configured():
        missing = [
            name for name, value in (
                ("from_address", config.from_address),
                ("to_address", config.to_address),
                ("smtp_host", config.smtp_host),
            ) if not value
        ]
        if config.password.is_empty():
            missing.append("password")
        if missing:
            raise ConfigurationError(
                f"Email channel in {context} is missing: {', '.join(missing)}"
            )
        if not 0 < config.smtp_port < 65536:
            raise ConfigurationError(
                f"Invalid smtp_port '{config.smtp_port}' in {context} email"
            )

    return config


def _parse_chat(data: Any, context: str) -> Optional[ChatChannelConfig]:
    """Parse the Slack channel section of a policy (token + channel_id)."""
    if not data:
        return None
    data = _require_mapping(data, "chat", context)

    config = ChatChannelConfig(
        token=parse_credential_reference(data.get("token"), f"{context} chat"),
        channel_id=str(data.get("channel_id", "") or ""),
    )

    if config.is_configured():
        if config.token.is_empty():
            raise ConfigurationError(f"Chat channel in {context} is missing: token")
        if not config.channel_id:
            raise ConfigurationError(f"Chat channel in {context} is missing: channel_id")

    return config


def _parse_messaging(data: Any, context: str) -> Optional[MessagingChannelConfig]:
    """Parse the Telegram channel section of a policy (bot_token + chat_id)."""
    if not data:
        return None
    data = _require_mapping(data, "messaging", context)

    config = MessagingChannelConfig(
        bot_token=parse_credential_reference(data.get("bot_token"), f"{context} messaging"),
        chat_id=_parse_int(data.get("chat_id", 0) or 0, "chat_id", f"{context} messaging"),
    )

    if config.is_configured():
        if config.bot_token.is_empty():
            raise ConfigurationError(f"Messaging channel in {context} is missing: bot_token")
        if not config.chat_id:
            raise ConfigurationError(f"Messaging channel in {context} is missing: chat_id")

    return config


def _parse_name_list(value: Any, field_name: str, context: str) -> List[str]:
    """Accept a single certificate name or a list of names."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigurationError(f"{field_name} must be a list in {context}")
    return [str(item) for item in value]


def parse_policy(
    data: Dict[str, Any],
    name: Optional[str] = None,
    namespace: Optional[str] = None,
) -> NotificationPolicy:
    """
    Parse and validate a single notification policy.

    Args:
        data: Raw policy mapping
        name: Policy name (overrides data['name'])
        namespace: Policy namespace (overrides data['namespace'])

    Returns:
        Validated NotificationPolicy

    Raises:
        ConfigurationError: If the policy is malformed
    """
    if not isinstance(data, dict):
        raise ConfigurationError("Each policy must be a mapping")

    name = name or data.get("name", "")
    if not name:
        raise ConfigurationError("Policy name is required")
    namespace = namespace or data.get("namespace") or DEFAULT_NAMESPACE
    context = f"policy {namespace}/{name}"

    if "expiry_threshold_days" not in data:
        raise ConfigurationError(f"expiry_threshold_days is required in {context}")
    threshold = _parse_int(data["expiry_threshold_days"], "expiry_threshold_days", context)
    if threshold < 0:
        raise ConfigurationError(
            f"expiry_threshold_days must not be negative in {context}, got {threshold}"
        )

    return NotificationPolicy(
        name=name,
        namespace=namespace,
        expiry_threshold_days=threshold,
        email=_parse_email(data.get("email"), context),
        chat=_parse_chat(data.get("chat"), context),
        messaging=_parse_messaging(data.get("messaging"), context),
        include_certificates=_parse_name_list(
            data.get("include_certificates"), "include_certificates", context
        ),
        ignore_certificates=_parse_name_list(
            data.get("ignore_certificates"), "ignore_certificates", context
        ),
        continue_on_error=bool(data.get("continue_on_error", False)),
    )


def _parse_settings(data: Dict[str, Any]) -> Settings:
    """
    Parse settings configuration.

    Args:
        data: Raw settings data from YAML

    Returns:
        Settings instance
    """
    data = _require_mapping(data, "settings", "configuration file")

    keyvault_urls = data.get("keyvault_urls") or []
    if isinstance(keyvault_urls, str):
        keyvault_urls = [keyvault_urls]
    if not isinstance(keyvault_urls, list) or not all(isinstance(u, str) for u in keyvault_urls):
        raise ConfigurationError("keyvault_urls must be a list of URLs")

    settings = Settings(
        certificate_source=str(data.get("certificate_source", "cert-manager")).lower(),
        secret_store=str(data.get("secret_store", "kubernetes")).lower(),
        policy_source=str(data.get("policy_source", "config")).lower(),
        kubeconfig=data.get("kubeconfig"),
        certificate_namespace=data.get("certificate_namespace"),
        keyvault_urls=keyvault_urls,
        pem_directory=data.get("pem_directory"),
        requeue_interval_hours=data.get("requeue_interval_hours", 24),
        initial_backoff_seconds=data.get("initial_backoff_seconds", 60),
        max_backoff_seconds=data.get("max_backoff_seconds", 3600),
        request_timeout_seconds=data.get("request_timeout_seconds", 30),
        policy_refresh_seconds=data.get("policy_refresh_seconds", 300),
        dry_run=bool(data.get("dry_run", False)),
    )

    if settings.certificate_source not in CERTIFICATE_SOURCES:
        raise ConfigurationError(
            f"Invalid certificate_source '{settings.certificate_source}'. "
            f"Must be one of: {', '.join(CERTIFICATE_SOURCES)}"
        )
    if settings.secret_store not in SECRET_STORES:
        raise ConfigurationError(
            f"Invalid secret_store '{settings.secret_store}'. "
            f"Must be one of: {', '.join(SECRET_STORES)}"
        )
    if settings.policy_source not in POLICY_SOURCES:
        raise ConfigurationError(
            f"Invalid policy_source '{settings.policy_source}'. "
            f"Must be one of: {', '.join(POLICY_SOURCES)}"
        )

    if settings.certificate_source == "keyvault":
        if not settings.keyvault_urls:
            raise ConfigurationError("keyvault_urls is required for certificate_source 'keyvault'")
        for url in settings.keyvault_urls:
            if not url.startswith("https://"):
                raise ConfigurationError(f"Key Vault URL must start with https://: {url}")
    if settings.certificate_source == "pem-directory" and not settings.pem_directory:
        raise ConfigurationError("pem_directory is required for certificate_source 'pem-directory'")

    for name in (
        "requeue_interval_hours",
        "initial_backoff_seconds",
        "max_backoff_seconds",
        "request_timeout_seconds",
        "policy_refresh_seconds",
    ):
        value = getattr(settings, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigurationError(f"{name} must be a positive number, got {value!r}")
    if settings.max_backoff_seconds < settings.initial_backoff_seconds:
        raise ConfigurationError("max_backoff_seconds must not be less than initial_backoff_seconds")

    return settings


def _parse_policies(data: Any) -> List[NotificationPolicy]:
    """
    Parse the top-level policies list.

    Args:
        data: Raw list from YAML (or None)

    Returns:
        List of validated policies

    Raises:
        ConfigurationError: If an entry is invalid or two policies share an identity
    """
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError("'policies' must be a list")

    policies = [parse_policy(item) for item in data]

    seen = set()
    for policy in policies:
        if policy.identity in seen:
            raise ConfigurationError(f"Duplicate policy: {policy.identity}")
        seen.add(policy.identity)

    return policies


def load_config(config_path: str) -> Config:
    """
    Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the configuration file

    Returns:
        Validated Config instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger = get_logger()
    path = Path(config_path)

    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    if path.suffix not in (".yaml", ".yml"):
        raise ConfigurationError(
            f"Configuration file must be YAML (.yaml or .yml): {config_path}"
        )

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")
    except IOError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}")

    if not raw_data:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_data, dict):
        raise ConfigurationError("Configuration file must contain a mapping")

    data = _expand_env_vars(raw_data)

    settings = _parse_settings(data.get("settings") or {})
    policies = _parse_policies(data.get("policies"))

    if settings.policy_source == "config" and not policies:
        raise ConfigurationError("At least one policy must be configured")

    logger.info(f"Loaded configuration from {config_path}")
    logger.info(f"  Certificate source: {settings.certificate_source}")
    logger.info(f"  Secret store: {settings.secret_store}")
    logger.info(f"  Policy source: {settings.policy_source}")
    for policy in policies:
        channels = policy.configured_channels()
        logger.info(
            f"  Policy {policy.identity}: threshold {policy.expiry_threshold_days} days, "
            f"channels: {', '.join(channels) if channels else 'none'}"
        )

    return Config(settings=settings, policies=policies)
