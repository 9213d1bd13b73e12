"""
Notification system for certificate expiry events.

Supports multiple notification channels, always attempted in this order:
- Email via SMTP
- Chat via the Slack Web API
- Messaging via the Telegram Bot API
"""

import smtplib
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.text import MIMEText
from typing import Callable, Dict, List, Optional

import requests

from .config_loader import (
    NotificationPolicy,
    CredentialReference,
    EmailChannelConfig,
    ChatChannelConfig,
    MessagingChannelConfig,
)
from .certificates import MonitoredCertificate
from .helpers import build_message
from .logger import get_logger
from .secrets import CredentialResolver

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
TELEGRAM_API_URL = "https://api.telegram.org"
EMAIL_SUBJECT = "Certificate Expiry Notice"
DEFAULT_TIMEOUT = 30


class TransportError(Exception):
    """Raised when a notification transport rejects or fails to deliver a message."""

    def __init__(self, channel: str, message: str):
        self.channel = channel
        super().__init__(f"{channel}: {message}")


class DispatchError(Exception):
    """Raised when one or more channels failed in a best-effort dispatch."""

    def __init__(self, outcomes: List["NotificationOutcome"]):
        self.outcomes = outcomes
        failed = ", ".join(f"{o.channel} ({o.error})" for o in outcomes if not o.success)
        super().__init__(f"notification failed on: {failed}")


class CycleCancelledError(Exception):
    """Raised when a cycle is cancelled before it completes."""
    pass


@dataclass
class NotificationOutcome:
    """Result of one channel for one dispatch."""
    channel: str
    success: bool
    error: Optional[str] = None


@dataclass
class DispatchResult:
    """Result of notifying about one certificate."""
    certificate: str
    outcomes: List[NotificationOutcome] = field(default_factory=list)

    @property
    def channels_attempted(self) -> List[str]:
        return [o.channel for o in self.outcomes]

    @property
    def success(self) -> bool:
        return all(o.success for o in self.outcomes)


class ChannelNotifier(ABC):
    """Delivers a message through one external transport."""

    channel: str = ""

    @property
    @abstractmethod
    def credential_reference(self) -> CredentialReference:
        """Reference to the credential this transport authenticates with."""
        pass

    @abstractmethod
    def send(self, credential: str, message: str) -> None:
        """
        Send a notification.

        Args:
            credential: Resolved credential value
            message: Plain-text message body

        Raises:
            TransportError: If the message could not be delivered
        """
        pass


class EmailNotifier(ChannelNotifier):
    """Send email notifications through an SMTP relay with plain auth."""

    channel = "email"

    def __init__(self, config: EmailChannelConfig, timeout: float = DEFAULT_TIMEOUT):
        self.config = config
        self.timeout = timeout
        self.logger = get_logger()

    @property
    def credential_reference(self) -> CredentialReference:
        return self.config.password

    def _build_email(self, message: str) -> str:
        msg = MIMEText(message, "plain", "utf-8")
        msg["Subject"] = EMAIL_SUBJECT
        msg["From"] = self.config.from_address
        msg["To"] = self.config.to_address
        return msg.as_string()

    def send(self, credential: str, message: str) -> None:
        """Send email via SMTP (STARTTLS when use_tls is set)."""
        try:
            with smtplib.SMTP(
                self.config.smtp_host,
                self.config.smtp_port,
                timeout=self.timeout,
            ) as server:
                if self.config.use_tls:
                    server.starttls()
                server.login(self.config.from_address, credential)
                server.sendmail(
                    self.config.from_address,
                    [self.config.to_address],
                    self._build_email(message),
                )
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(
                self.channel,
                f"SMTP error via {self.config.smtp_host}:{self.config.smtp_port}: {e}",
            )

        self.logger.debug(f"Email sent to {self.config.to_address}")


class ChatNotifier(ChannelNotifier):
    """Post notifications to a Slack channel with a bot token."""

    channel = "chat"

    def __init__(self, config: ChatChannelConfig, timeout: float = DEFAULT_TIMEOUT):
        self.config = config
        self.timeout = timeout
        self.logger = get_logger()

    @property
    def credential_reference(self) -> CredentialReference:
        return self.config.token

    def send(self, credential: str, message: str) -> None:
        """Post a message via chat.postMessage."""
        try:
            response = requests.post(
                SLACK_POST_MESSAGE_URL,
                json={"channel": self.config.channel_id, "text": message},
                headers={
                    "Authorization": f"Bearer {credential}",
                    "Content-Type": "application/json; charset=utf-8",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(self.channel, f"Slack request failed: {e}")

        if response.status_code != 200:
            raise TransportError(
                self.channel,
                f"Slack API error: {response.status_code} - {response.text}",
            )

        try:
            body = response.json()
        except ValueError:
            raise TransportError(self.channel, f"Slack API returned non-JSON body: {response.text}")

        # Slack reports most failures as HTTP 200 with ok=false
        if not body.get("ok"):
            raise TransportError(
                self.channel,
                f"Slack API error: {body.get('error', 'unknown error')}",
            )

        self.logger.debug(f"Slack message posted to {self.config.channel_id}")


class MessagingNotifier(ChannelNotifier):
    """Send notifications to a Telegram chat with a bot token."""

    channel = "messaging"

    def __init__(self, config: MessagingChannelConfig, timeout: float = DEFAULT_TIMEOUT):
        self.config = config
        self.timeout = timeout
        self.logger = get_logger()

    @property
    def credential_reference(self) -> CredentialReference:
        return self.config.bot_token

    def send(self, credential: str, message: str) -> None:
        """Send a message via the Bot API sendMessage method."""
        url = f"{TELEGRAM_API_URL}/bot{credential}/sendMessage"
        try:
            response = requests.post(
                url,
                json={"chat_id": self.config.chat_id, "text": message},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            # The request URL embeds the bot token
            error = str(e).replace(credential, "***")
            raise TransportError(self.channel, f"Telegram request failed: {error}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200 or not body.get("ok"):
            description = body.get("description") or response.text
            raise TransportError(
                self.channel,
                f"Telegram API error: {response.status_code} - {description}",
            )

        self.logger.debug(f"Telegram message sent to chat {self.config.chat_id}")


NotifierFactory = Callable[[object, float], ChannelNotifier]

DEFAULT_NOTIFIER_FACTORIES: Dict[str, NotifierFactory] = {
    "email": EmailNotifier,
    "chat": ChatNotifier,
    "messaging": MessagingNotifier,
}


class NotificationDispatcher:
    """
    Sends the notification for one certificate through every channel a
    policy configures.

    Channels run sequentially in the fixed order email, chat, messaging.
    By default the first failing channel aborts the remaining ones and its
    error propagates. Policies with continue_on_error attempt every channel
    and raise a DispatchError if any failed. There is no retry here; the
    next cycle resends.
    """

    CHANNEL_ORDER = ("email", "chat", "messaging")

    def __init__(
        self,
        resolver: CredentialResolver,
        notifier_factories: Optional[Dict[str, NotifierFactory]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        dry_run: bool = False,
    ):
        self.resolver = resolver
        self.notifier_factories = dict(DEFAULT_NOTIFIER_FACTORIES)
        if notifier_factories:
            self.notifier_factories.update(notifier_factories)
        self.timeout = timeout
        self.dry_run = dry_run
        self.logger = get_logger()

    def active_notifiers(self, policy: NotificationPolicy) -> List[ChannelNotifier]:
        """Build notifiers for the policy's configured channels, in dispatch order."""
        configs = {
            "email": policy.email,
            "chat": policy.chat,
            "messaging": policy.messaging,
        }
        notifiers = []
        for channel in self.CHANNEL_ORDER:
            config = configs[channel]
            if config is None or not config.is_configured():
                continue
            notifiers.append(self.notifier_factories[channel](config, self.timeout))
        return notifiers

    def _send(
        self,
        notifier: ChannelNotifier,
        policy: NotificationPolicy,
        message: str,
    ) -> None:
        credential = self.resolver.resolve(notifier.credential_reference, policy.namespace)

        if self.dry_run:
            self.logger.info(f"    [DRY RUN] Would send {notifier.channel} notification")
            return

        notifier.send(credential, message)

    def dispatch(
        self,
        policy: NotificationPolicy,
        certificate: MonitoredCertificate,
        now: datetime,
        cancel_event: Optional[threading.Event] = None,
    ) -> DispatchResult:
        """
        Notify about one certificate through all configured channels.

        Args:
            policy: Policy whose channels are used
            certificate: Certificate that triggered
            now: Reference time for the message
            cancel_event: Optional event; when set, remaining channels are skipped

        Returns:
            DispatchResult with one outcome per attempted channel

        Raises:
            CredentialError: Credential resolution failed (fail-fast mode)
            TransportError: Delivery failed (fail-fast mode)
            DispatchError: One or more channels failed (continue_on_error mode)
            CycleCancelledError: cancel_event was set
        """
        result = DispatchResult(certificate=certificate.identity)
        notifiers = self.active_notifiers(policy)

        if not notifiers:
            self.logger.debug(f"  No channels configured in policy {policy.identity}")
            return result

        message = build_message(
            certificate_name=certificate.name,
            not_after=certificate.not_after,
            threshold_days=policy.expiry_threshold_days,
            now=now,
            namespace=certificate.namespace,
            dns_names=certificate.dns_names,
        )

        for notifier in notifiers:
            if cancel_event is not None and cancel_event.is_set():
                raise CycleCancelledError(
                    f"cancelled before {notifier.channel} notification for {certificate.identity}"
                )

            try:
                self._send(notifier, policy, message)
            except Exception as e:
                self.logger.failure(
                    f"policy={policy.identity} certificate={certificate.identity} "
                    f"channel={notifier.channel}: {e}"
                )
                result.outcomes.append(NotificationOutcome(notifier.channel, False, str(e)))
                if not policy.continue_on_error:
                    raise
                continue

            result.outcomes.append(NotificationOutcome(notifier.channel, True))
            self.logger.success(
                f"Sent {notifier.channel} notification for {certificate.identity}"
            )

        if not result.success:
            raise DispatchError(result.outcomes)

        return result
