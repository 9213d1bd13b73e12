"""
Kubernetes client setup and CertNotification policy discovery.
"""

from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from .config_loader import ConfigurationError, NotificationPolicy, parse_policy
from .logger import get_logger

CERT_NOTIFICATION_GROUP = "certnotifier.io"
CERT_NOTIFICATION_VERSION = "v1"
CERT_NOTIFICATION_PLURAL = "certnotifications"


class PolicySourceError(Exception):
    """Raised when policies cannot be listed from the cluster."""
    pass


def load_kubernetes_config(kubeconfig: Optional[str] = None) -> None:
    """
    Load cluster credentials.

    Uses the given kubeconfig file if set, otherwise the in-cluster service
    account, falling back to the default kubeconfig.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        return

    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config()


def _selector(data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not data:
        return None
    return {"name": data.get("name", ""), "key": data.get("key", "")}


def _section(spec: Dict[str, Any], *names: str) -> Dict[str, Any]:
    for name in names:
        value = spec.get(name)
        if value is None:
            continue
        if not isinstance(value, dict):
            raise ConfigurationError(f"spec.{name} must be an object")
        return value
    return {}


def policy_from_resource(resource: Dict[str, Any]) -> NotificationPolicy:
    """
    Convert a CertNotification custom resource into a NotificationPolicy.

    The resource's namespace becomes the policy namespace, which is also the
    default scope for resolving its credential references.

    Raises:
        ConfigurationError: If the resource spec is invalid
    """
    metadata = resource.get("metadata", {})
    spec = resource.get("spec") or {}

    email = _section(spec, "emailConfig")
    chat = _section(spec, "chatConfig", "slackConfig")
    messaging = _section(spec, "messagingConfig", "telegramConfig")

    data = {
        "expiry_threshold_days": spec.get("expiryNotificationDays"),
        "email": {
            "from_address": email.get("from", ""),
            "password": _selector(email.get("password")),
            "to_address": email.get("to", ""),
            "smtp_host": email.get("smtpHost", ""),
            "smtp_port": email.get("smtpPort"),
        } if email else None,
        "chat": {
            "token": _selector(chat.get("token")),
            "channel_id": chat.get("channelID", ""),
        } if chat else None,
        "messaging": {
            "bot_token": _selector(messaging.get("botToken")),
            "chat_id": messaging.get("chatID", 0),
        } if messaging else None,
        "include_certificates": spec.get("includeCertificates"),
        "ignore_certificates": spec.get("ignoreCertificates"),
        "continue_on_error": spec.get("continueOnError", False),
    }
    if data["expiry_threshold_days"] is None:
        del data["expiry_threshold_days"]

    return parse_policy(
        data,
        name=metadata.get("name"),
        namespace=metadata.get("namespace"),
    )


class KubernetesPolicySource:
    """List CertNotification resources and convert them into policies."""

    def __init__(self, custom_objects_api, namespace: Optional[str] = None):
        self.custom_objects = custom_objects_api
        self.namespace = namespace
        self.logger = get_logger()

    def list_policies(self) -> List[NotificationPolicy]:
        """
        List valid policies. Invalid resources are logged and skipped so one
        malformed resource does not block the others.
        """
        try:
            if self.namespace:
                response = self.custom_objects.list_namespaced_custom_object(
                    group=CERT_NOTIFICATION_GROUP,
                    version=CERT_NOTIFICATION_VERSION,
                    namespace=self.namespace,
                    plural=CERT_NOTIFICATION_PLURAL,
                )
            else:
                response = self.custom_objects.list_cluster_custom_object(
                    group=CERT_NOTIFICATION_GROUP,
                    version=CERT_NOTIFICATION_VERSION,
                    plural=CERT_NOTIFICATION_PLURAL,
                )
        except ApiException as e:
            raise PolicySourceError(
                f"Failed to list CertNotification resources: {e.status} {e.reason}"
            )

        policies = []
        for item in response.get("items", []):
            metadata = item.get("metadata", {})
            try:
                policies.append(policy_from_resource(item))
            except ConfigurationError as e:
                self.logger.error(
                    f"Rejecting CertNotification "
                    f"{metadata.get('namespace')}/{metadata.get('name')}: {e}"
                )

        return policies


def create_api_clients(kubeconfig: Optional[str] = None):
    """
    Load configuration and build the API clients the notifier needs.

    Returns:
        Tuple of (CoreV1Api, CustomObjectsApi)
    """
    load_kubernetes_config(kubeconfig)
    return client.CoreV1Api(), client.CustomObjectsApi()
