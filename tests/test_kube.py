"""Tests for certnotifier.kube: CertNotification discovery and client setup."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml
from kubernetes.client.rest import ApiException
from kubernetes.config import ConfigException

from certnotifier.config_loader import ConfigurationError, CredentialReference
from certnotifier.kube import (
    KubernetesPolicySource,
    PolicySourceError,
    load_kubernetes_config,
    policy_from_resource,
)


def cert_notification(name="team-a", namespace="monitoring", **spec):
    resource_spec = {"expiryNotificationDays": 30}
    resource_spec.update(spec)
    return {
        "apiVersion": "certnotifier.io/v1",
        "kind": "CertNotification",
        "metadata": {"name": name, "namespace": namespace},
        "spec": resource_spec,
    }


class TestPolicyFromResource:
    def test_maps_all_channels(self):
        resource = cert_notification(
            emailConfig={
                "from": "alerts@example.com",
                "to": "oncall@example.com",
                "smtpHost": "smtp.example.com",
                "smtpPort": 465,
                "password": {"name": "smtp", "key": "password"},
            },
            slackConfig={"channelID": "C123", "token": {"name": "slack", "key": "token"}},
            telegramConfig={"chatID": -100, "botToken": {"name": "telegram", "key": "token"}},
        )

        policy = policy_from_resource(resource)

        assert policy.identity == "monitoring/team-a"
        assert policy.expiry_threshold_days == 30
        assert policy.email.smtp_host == "smtp.example.com"
        assert policy.email.smtp_port == 465
        assert policy.email.password == CredentialReference("smtp", "password")
        assert policy.chat.channel_id == "C123"
        assert policy.messaging.chat_id == -100
        assert policy.configured_channels() == ["email", "chat", "messaging"]

    def test_generic_channel_names(self):
        resource = cert_notification(
            chatConfig={"channelID": "C1", "token": {"name": "slack", "key": "token"}},
            messagingConfig={"chatID": 7, "botToken": {"name": "tg", "key": "token"}},
        )

        assert policy_from_resource(resource).configured_channels() == ["chat", "messaging"]

    def test_selection_lists_and_continue_on_error(self):
        resource = cert_notification(
            includeCertificates=["api", "web"],
            ignoreCertificates=["web"],
            continueOnError=True,
        )

        policy = policy_from_resource(resource)

        assert policy.include_certificates == ["api", "web"]
        assert policy.ignore_certificates == ["web"]
        assert policy.continue_on_error is True

    def test_non_object_channel_rejected(self):
        with pytest.raises(ConfigurationError, match="spec.slackConfig must be an object"):
            policy_from_resource(cert_notification(slackConfig="C123"))

    def test_missing_threshold_rejected(self):
        resource = cert_notification()
        del resource["spec"]["expiryNotificationDays"]

        with pytest.raises(ConfigurationError, match="expiry_threshold_days"):
            policy_from_resource(resource)

    def test_negative_threshold_rejected(self):
        with pytest.raises(ConfigurationError, match="negative"):
            policy_from_resource(cert_notification(expiryNotificationDays=-3))


class TestKubernetesPolicySource:
    def test_lists_cluster_wide(self):
        api = MagicMock()
        api.list_cluster_custom_object.return_value = {
            "items": [cert_notification("a"), cert_notification("b", namespace="payments")],
        }

        policies = KubernetesPolicySource(api).list_policies()

        api.list_cluster_custom_object.assert_called_once_with(
            group="certnotifier.io", version="v1", plural="certnotifications"
        )
        assert [p.identity for p in policies] == ["monitoring/a", "payments/b"]

    def test_lists_one_namespace(self):
        api = MagicMock()
        api.list_namespaced_custom_object.return_value = {"items": []}

        assert KubernetesPolicySource(api, namespace="monitoring").list_policies() == []
        api.list_namespaced_custom_object.assert_called_once_with(
            group="certnotifier.io", version="v1", namespace="monitoring", plural="certnotifications"
        )

    def test_invalid_resources_are_skipped(self):
        api = MagicMock()
        api.list_cluster_custom_object.return_value = {
            "items": [
                cert_notification("broken", expiryNotificationDays=-1),
                cert_notification("good"),
            ],
        }

        policies = KubernetesPolicySource(api).list_policies()

        assert [p.name for p in policies] == ["good"]

    def test_api_error(self):
        api = MagicMock()
        api.list_cluster_custom_object.side_effect = ApiException(status=500, reason="Boom")

        with pytest.raises(PolicySourceError, match="500"):
            KubernetesPolicySource(api).list_policies()


class TestLoadKubernetesConfig:
    def test_explicit_kubeconfig(self):
        with patch("certnotifier.kube.config") as config:
            load_kubernetes_config("/tmp/kubeconfig")

        config.load_kube_config.assert_called_once_with(config_file="/tmp/kubeconfig")
        config.load_incluster_config.assert_not_called()

    def test_in_cluster(self):
        with patch("certnotifier.kube.config") as config:
            load_kubernetes_config()

        config.load_incluster_config.assert_called_once_with()
        config.load_kube_config.assert_not_called()

    def test_falls_back_to_default_kubeconfig(self):
        with patch("certnotifier.kube.config") as config:
            config.ConfigException = ConfigException
            config.load_incluster_config.side_effect = ConfigException("not in cluster")
            load_kubernetes_config()

        config.load_kube_config.assert_called_once_with()


class TestCustomResourceDefinition:
    @pytest.fixture
    def spec_properties(self):
        crd_path = Path(__file__).resolve().parent.parent / "deploy" / "certnotification-crd.yaml"
        crd = yaml.safe_load(crd_path.read_text())
        version = crd["spec"]["versions"][0]
        return version["schema"]["openAPIV3Schema"]["properties"]["spec"]["properties"]

    @pytest.mark.parametrize("field, subfields", [
        ("emailConfig", {"from", "to", "smtpHost", "smtpPort", "password"}),
        ("slackConfig", {"channelID", "token"}),
        ("chatConfig", {"channelID", "token"}),
        ("telegramConfig", {"chatID", "botToken"}),
        ("messagingConfig", {"chatID", "botToken"}),
    ])
    def test_declares_every_channel_field_read_by_the_mapper(self, spec_properties, field, subfields):
        assert field in spec_properties
        assert set(spec_properties[field]["properties"]) == subfields

    def test_declares_policy_fields(self, spec_properties):
        for field in ("expiryNotificationDays", "continueOnError", "includeCertificates", "ignoreCertificates"):
            assert field in spec_properties
