"""Tests for the command-line entry point."""

import textwrap
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from cryptography.hazmat.primitives import serialization

from main import (
    ExecutionSummary,
    apply_threshold_override,
    filter_policies,
    main,
    needs_kubernetes,
    parse_arguments,
    run_once,
)
from certnotifier.config_loader import Config, Settings
from conftest import make_policy
from test_certificates import make_x509


class TestParseArguments:
    def test_defaults(self):
        args = parse_arguments([])
        assert args.config == "config.yaml"
        assert args.once is False
        assert args.policy is None
        assert args.threshold is None

    def test_repeated_policy(self):
        args = parse_arguments(["--policy", "a", "--policy", "ns/b"])
        assert args.policy == ["a", "ns/b"]

    def test_negative_threshold_rejected(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--threshold", "-1"])

    def test_json_summary_requires_once(self):
        with pytest.raises(SystemExit):
            parse_arguments(["--json-summary"])


class TestPolicyFiltering:
    def test_no_selection_keeps_all(self):
        policies = [make_policy(name="a"), make_policy(name="b")]
        assert filter_policies(policies, None) == policies

    def test_by_name_or_identity(self):
        policies = [make_policy(name="a"), make_policy(name="b"), make_policy(name="c")]
        selected = filter_policies(policies, ["a", "monitoring/c"])
        assert [p.name for p in selected] == ["a", "c"]

    def test_threshold_override(self):
        policies = apply_threshold_override([make_policy(threshold=30)], 3)
        assert policies[0].expiry_threshold_days == 3


class TestNeedsKubernetes:
    def test_local_sources(self):
        config = Config(settings=Settings(
            certificate_source="pem-directory",
            secret_store="environment",
            pem_directory="/certs",
        ))
        assert needs_kubernetes(config) is False

    def test_cluster_defaults(self):
        assert needs_kubernetes(Config(settings=Settings())) is True


class TestRunOnce:
    def test_failures_are_recorded_per_policy(self):
        scheduler = MagicMock()
        ok_cycle = MagicMock(triggered=[])
        scheduler.run_cycle.side_effect = [ok_cycle, RuntimeError("smtp down")]
        summary = ExecutionSummary()

        run_once([make_policy(name="a"), make_policy(name="b")], scheduler, summary)

        assert summary.cycles == [ok_cycle]
        assert summary.failures == [{"policy": "monitoring/b", "error": "smtp down"}]
        assert summary.exit_code == 1
        assert summary.success is False


CONFIG = """
settings:
  certificate_source: pem-directory
  pem_directory: {pem_directory}
  secret_store: environment
policies:
  - name: edge
    expiry_threshold_days: 30
    chat:
      channel_id: C123
      token: {{name: slack, key: token}}
"""


@pytest.fixture
def pem_config(tmp_path, monkeypatch):
    certs = tmp_path / "certs"
    certs.mkdir()
    not_after = datetime.now(timezone.utc).replace(microsecond=0) + timedelta(days=5)
    cert = make_x509(common_name="edge.example.com", dns_names=("edge.example.com",), not_after=not_after)
    (certs / "edge.pem").write_bytes(cert.public_bytes(serialization.Encoding.PEM))

    config_path = tmp_path / "config.yaml"
    config_path.write_text(textwrap.dedent(CONFIG.format(pem_directory=certs)))
    monkeypatch.setenv("CERTNOTIFIER_SECRET_SLACK__TOKEN", "xoxb-test")
    return str(config_path)


class TestMain:
    def test_once_sends_notification(self, pem_config):
        response = MagicMock(status_code=200)
        response.json.return_value = {"ok": True}

        with patch("certnotifier.notification.requests.post", return_value=response) as post:
            exit_code = main(["--config", pem_config, "--once", "--no-color"])

        assert exit_code == 0
        post.assert_called_once()
        assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer xoxb-test"
        assert "edge" in post.call_args.kwargs["json"]["text"]

    def test_once_dry_run_sends_nothing(self, pem_config, capsys):
        with patch("certnotifier.notification.requests.post") as post:
            exit_code = main(["--config", pem_config, "--once", "--dry-run", "--json-summary"])

        assert exit_code == 0
        post.assert_not_called()
        assert '"dry_run": true' in capsys.readouterr().out

    def test_threshold_override_suppresses_notification(self, pem_config):
        with patch("certnotifier.notification.requests.post") as post:
            exit_code = main(["--config", pem_config, "--once", "--threshold", "1"])

        assert exit_code == 0
        post.assert_not_called()

    def test_transport_failure_exits_1(self, pem_config):
        response = MagicMock(status_code=200)
        response.json.return_value = {"ok": False, "error": "channel_not_found"}

        with patch("certnotifier.notification.requests.post", return_value=response):
            exit_code = main(["--config", pem_config, "--once"])

        assert exit_code == 1

    def test_configuration_error_exits_2(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("settings:\n  certificate_source: nowhere\n")

        assert main(["--config", str(config_path), "--once"]) == 2

    def test_missing_config_exits_2(self, tmp_path):
        assert main(["--config", str(tmp_path / "missing.yaml"), "--once"]) == 2

    def test_malformed_channel_section_exits_2(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(textwrap.dedent("""
            settings:
              certificate_source: pem-directory
              pem_directory: /certs
              secret_store: environment
            policies:
              - name: edge
                expiry_threshold_days: 30
                chat: [C123]
        """))

        assert main(["--config", str(config_path), "--once"]) == 2
