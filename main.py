#!/usr/bin/env python3
"""
Certificate Expiry Notifier - Main Entry Point.

Periodically evaluates monitored certificates against notification
policies and alerts operators by email, Slack and Telegram when a
certificate is within its policy's expiry window.

Usage:
    # Run as a long-lived service (one evaluation loop per policy)
    python main.py --config config.yaml

    # Evaluate every policy once and exit (cron / CI usage)
    python main.py --config config.yaml --once

    # Evaluate one policy without sending anything
    python main.py --once --policy default/platform-certs --dry-run
"""

import argparse
import json
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Dict, Optional, Any

from certnotifier.logger import setup_logger, get_logger
from certnotifier.config_loader import (
    load_config,
    Config,
    ConfigurationError,
    NotificationPolicy,
)
from certnotifier.certificates import (
    CertificateSource,
    CertManagerCertificateSource,
    KeyVaultCertificateSource,
    PemDirectoryCertificateSource,
)
from certnotifier.secrets import (
    CredentialResolver,
    KubernetesSecretResolver,
    EnvironmentSecretResolver,
)
from certnotifier.notification import NotificationDispatcher
from certnotifier.scheduler import ReconciliationScheduler, PolicyRunner, CycleResult
from certnotifier.kube import KubernetesPolicySource, create_api_clients


@dataclass
class ExecutionSummary:
    """Summary of a --once run over all selected policies."""
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    dry_run: bool = False
    success: bool = True
    exit_code: int = 0
    cycles: List[CycleResult] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)
    global_errors: List[str] = field(default_factory=list)

    def add_cycle(self, cycle: CycleResult) -> None:
        self.cycles.append(cycle)

    def add_failure(self, policy: str, error: str) -> None:
        self.failures.append({"policy": policy, "error": error})
        self.success = False
        self.exit_code = 1

    def add_global_error(self, error: str, exit_code: int = 1) -> None:
        self.global_errors.append(error)
        self.success = False
        self.exit_code = exit_code

    def finalize(self) -> None:
        self.completed_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "dry_run": self.dry_run,
            "success": self.success,
            "exit_code": self.exit_code,
            "summary": {
                "policies_evaluated": len(self.cycles) + len(self.failures),
                "policies_failed": len(self.failures),
                "certificates_notified": sum(len(c.triggered) for c in self.cycles),
            },
            "cycles": [c.to_dict() for c in self.cycles],
            "failures": self.failures,
            "global_errors": self.global_errors,
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Certificate Expiry Notifier",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Run continuously
  %(prog)s --once                           # Evaluate all policies once
  %(prog)s --once --dry-run -v              # Resolve credentials, send nothing
  %(prog)s --once --policy default/team-a   # Evaluate a single policy
        """,
    )

    parser.add_argument(
        "--config",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Evaluate each policy once and exit instead of running continuously",
    )
    parser.add_argument(
        "--policy",
        type=str,
        action="append",
        default=None,
        help="Only evaluate this policy (name or namespace/name); may be repeated",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Test mode: resolve credentials but don't send notifications",
    )
    parser.add_argument(
        "--threshold",
        type=int,
        help="Override expiry threshold (days) for every policy",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Also write logs to this file",
    )
    parser.add_argument(
        "--json-summary",
        action="store_true",
        help="Output machine-readable JSON summary at the end of a --once run",
    )

    args = parser.parse_args(argv)

    if args.threshold is not None and args.threshold < 0:
        parser.error("--threshold must not be negative")
    if args.json_summary and not args.once:
        parser.error("--json-summary requires --once")

    return args


def build_credential_resolver(config: Config, core_v1=None) -> CredentialResolver:
    """Create the credential resolver selected by settings.secret_store."""
    if config.settings.secret_store == "environment":
        return EnvironmentSecretResolver()
    return KubernetesSecretResolver(core_v1)


def build_certificate_source(config: Config, custom_objects=None) -> CertificateSource:
    """Create the certificate source selected by settings.certificate_source."""
    settings = config.settings
    if settings.certificate_source == "keyvault":
        return KeyVaultCertificateSource(settings.keyvault_urls)
    if settings.certificate_source == "pem-directory":
        return PemDirectoryCertificateSource(settings.pem_directory)
    return CertManagerCertificateSource(custom_objects, namespace=settings.certificate_namespace)


def needs_kubernetes(config: Config) -> bool:
    settings = config.settings
    return (
        settings.certificate_source == "cert-manager"
        or settings.secret_store == "kubernetes"
        or settings.policy_source == "kubernetes"
    )


def filter_policies(
    policies: List[NotificationPolicy],
    selected: Optional[List[str]],
) -> List[NotificationPolicy]:
    """Keep only policies named by --policy (by name or namespace/name)."""
    if not selected:
        return policies
    return [
        policy for policy in policies
        if policy.name in selected or policy.identity in selected
    ]


def apply_threshold_override(
    policies: List[NotificationPolicy],
    threshold: Optional[int],
) -> List[NotificationPolicy]:
    if threshold is None:
        return policies
    for policy in policies:
        policy.expiry_threshold_days = threshold
    return policies


def run_once(
    policies: List[NotificationPolicy],
    scheduler: ReconciliationScheduler,
    summary: ExecutionSummary,
) -> None:
    """Run one cycle per policy, recording results in the summary."""
    logger = get_logger()

    for policy in policies:
        try:
            summary.add_cycle(scheduler.run_cycle(policy))
        except Exception as e:
            logger.failure(f"Policy {policy.identity}: {e}")
            summary.add_failure(policy.identity, str(e))


def print_execution_summary(summary: ExecutionSummary, output_json: bool = False) -> None:
    """
    Print the summary block at the end of a --once run.

    Args:
        summary: ExecutionSummary with all results
        output_json: If True, also output machine-readable JSON
    """
    logger = get_logger()

    status_str = "SUCCESS" if summary.success else "FAILED"
    if summary.dry_run:
        status_str += " (DRY RUN)"

    logger.section("EXECUTION SUMMARY")
    logger.info(f"Status: {status_str}")
    logger.info(f"Started: {summary.started_at}")
    logger.info(f"Completed: {summary.completed_at}")

    for cycle in summary.cycles:
        logger.info(f"  [OK] {cycle.policy}: {len(cycle.evaluated)} evaluated, "
                    f"{len(cycle.triggered)} notified")
        for certificate, channels in cycle.notified.items():
            logger.info(f"      - {certificate}: {', '.join(channels) or 'no channels'}")

    for failure in summary.failures:
        logger.error(f"  [FAILED] {failure['policy']}: {failure['error']}")

    for error in summary.global_errors:
        logger.error(f"  - {error}")

    logger.info(f"Exit Code: {summary.exit_code}")

    if output_json:
        logger.info("--- BEGIN JSON SUMMARY ---")
        print(summary.to_json())
        logger.info("--- END JSON SUMMARY ---")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Exit Codes:
        0 - All cycles succeeded (or service stopped cleanly)
        1 - One or more cycles failed
        2 - Configuration error

    Returns:
        Exit code
    """
    args = parse_arguments(argv)

    logger = setup_logger(
        verbose=args.verbose,
        use_colors=not args.no_color,
        log_file=args.log_file,
    )

    logger.info("Certificate Expiry Notifier")
    logger.info("=" * 50)

    if args.dry_run:
        logger.warning("DRY RUN MODE - No notifications will be sent")

    summary = ExecutionSummary(dry_run=args.dry_run)

    try:
        config = load_config(args.config)
        if args.dry_run:
            config.settings.dry_run = True
        settings = config.settings

        core_v1 = custom_objects = None
        if needs_kubernetes(config):
            core_v1, custom_objects = create_api_clients(settings.kubeconfig)

        dispatcher = NotificationDispatcher(
            resolver=build_credential_resolver(config, core_v1),
            timeout=settings.request_timeout_seconds,
            dry_run=settings.dry_run,
        )
        certificate_source = build_certificate_source(config, custom_objects)

        def make_scheduler() -> ReconciliationScheduler:
            return ReconciliationScheduler(
                certificate_source=certificate_source,
                dispatcher=dispatcher,
                requeue_after=timedelta(hours=settings.requeue_interval_hours),
            )

        policy_source = None
        if settings.policy_source == "kubernetes":
            policy_source = KubernetesPolicySource(custom_objects)

        def current_policies() -> List[NotificationPolicy]:
            policies = policy_source.list_policies() if policy_source else config.policies
            policies = filter_policies(policies, args.policy)
            return apply_threshold_override(policies, args.threshold)

        if args.once:
            policies = current_policies()
            if not policies:
                logger.warning("No policies matched; nothing to evaluate")
            run_once(policies, make_scheduler(), summary)
        else:
            runner = PolicyRunner(
                scheduler_factory=make_scheduler,
                initial_backoff=timedelta(seconds=settings.initial_backoff_seconds),
                max_backoff=timedelta(seconds=settings.max_backoff_seconds),
            )
            shutdown = threading.Event()

            def handle_signal(signum, frame):
                logger.info(f"Received signal {signum}, shutting down")
                shutdown.set()

            signal.signal(signal.SIGINT, handle_signal)
            signal.signal(signal.SIGTERM, handle_signal)

            runner.start()
            runner.sync(current_policies())
            while not shutdown.wait(settings.policy_refresh_seconds):
                if policy_source is None:
                    continue
                try:
                    runner.sync(current_policies())
                except Exception as e:
                    logger.error(f"Failed to refresh policies: {e}")

            runner.stop(wait=True)
            logger.info("Stopped")
            return 0

    except ConfigurationError as e:
        error_msg = f"Configuration error: {e}"
        logger.error(error_msg)
        summary.add_global_error(error_msg, exit_code=2)

    except Exception as e:
        error_msg = f"Fatal error: {e}"
        logger.error(error_msg)
        summary.add_global_error(error_msg)
        if args.verbose:
            import traceback
            traceback.print_exc()

    summary.finalize()
    if args.once or summary.global_errors:
        print_execution_summary(summary, output_json=args.json_summary)

    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
