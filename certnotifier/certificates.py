"""
Certificate sources.

Lists the certificates the notifier can observe, together with their
expiry timestamps. Supported sources:
- cert-manager Certificate resources in Kubernetes
- Azure Key Vault certificates
- PEM files in a local directory
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from cryptography import x509
from kubernetes.client.rest import ApiException

from .logger import get_logger

# Azure SDK imports with graceful handling
try:
    from azure.identity import DefaultAzureCredential
    from azure.keyvault.certificates import CertificateClient
    from azure.core.exceptions import AzureError, ClientAuthenticationError
    AZURE_SDK_AVAILABLE = True
except ImportError:
    AZURE_SDK_AVAILABLE = False


CERT_MANAGER_GROUP = "cert-manager.io"
CERT_MANAGER_VERSION = "v1"
CERT_MANAGER_PLURAL = "certificates"

PEM_SUFFIXES = (".pem", ".crt", ".cer")


class CertificateSourceError(Exception):
    """Raised when certificates cannot be listed."""
    pass


@dataclass
class MonitoredCertificate:
    """
    A certificate observed by the notifier.

    not_after is None while the certificate has not been issued yet;
    such certificates are never notified about.
    """
    name: str
    not_after: Optional[datetime] = None
    namespace: Optional[str] = None
    dns_names: List[str] = field(default_factory=list)
    source: str = ""

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp as written in Kubernetes resource status.

    Args:
        value: Timestamp string such as "2025-03-01T10:00:00Z"

    Returns:
        Timezone-aware datetime, or None if value is empty
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_dns_names(cert: x509.Certificate) -> List[str]:
    """
    Extract domain names (CN and DNS SANs) from a parsed certificate.

    Args:
        cert: Parsed X.509 certificate

    Returns:
        List of domain names, common name first
    """
    domains = []

    for attribute in cert.subject.get_attributes_for_oid(x509.oid.NameOID.COMMON_NAME):
        if attribute.value and attribute.value not in domains:
            domains.append(attribute.value)

    try:
        san_ext = cert.extensions.get_extension_for_oid(
            x509.oid.ExtensionOID.SUBJECT_ALTERNATIVE_NAME
        )
        for name in san_ext.value.get_values_for_type(x509.DNSName):
            if name not in domains:
                domains.append(name)
    except x509.ExtensionNotFound:
        pass

    return domains


class CertificateSource(ABC):
    """Read-only listing of monitored certificates."""

    @abstractmethod
    def list_certificates(self) -> List[MonitoredCertificate]:
        """
        List all observable certificates in a stable order.

        Raises:
            CertificateSourceError: If the listing fails
        """
        pass


class CertManagerCertificateSource(CertificateSource):
    """List cert-manager Certificate resources."""

    def __init__(self, custom_objects_api, namespace: Optional[str] = None):
        """
        Args:
            custom_objects_api: kubernetes.client.CustomObjectsApi instance
            namespace: Restrict listing to one namespace (None lists cluster-wide)
        """
        self.custom_objects = custom_objects_api
        self.namespace = namespace
        self.logger = get_logger()

    def list_certificates(self) -> List[MonitoredCertificate]:
        try:
            if self.namespace:
                response = self.custom_objects.list_namespaced_custom_object(
                    group=CERT_MANAGER_GROUP,
                    version=CERT_MANAGER_VERSION,
                    namespace=self.namespace,
                    plural=CERT_MANAGER_PLURAL,
                )
            else:
                response = self.custom_objects.list_cluster_custom_object(
                    group=CERT_MANAGER_GROUP,
                    version=CERT_MANAGER_VERSION,
                    plural=CERT_MANAGER_PLURAL,
                )
        except ApiException as e:
            raise CertificateSourceError(
                f"Failed to list cert-manager certificates: {e.status} {e.reason}"
            )

        certificates = []
        for item in response.get("items", []):
            metadata = item.get("metadata", {})
            spec = item.get("spec", {})
            status = item.get("status") or {}

            try:
                not_after = parse_timestamp(status.get("notAfter"))
            except ValueError as e:
                raise CertificateSourceError(
                    f"Invalid notAfter on certificate "
                    f"{metadata.get('namespace')}/{metadata.get('name')}: {e}"
                )

            certificates.append(MonitoredCertificate(
                name=metadata.get("name", ""),
                namespace=metadata.get("namespace"),
                not_after=not_after,
                dns_names=list(spec.get("dnsNames") or []),
                source="cert-manager",
            ))

        self.logger.debug(f"Listed {len(certificates)} cert-manager certificate(s)")
        return certificates


class KeyVaultCertificateSource(CertificateSource):
    """
    List certificates stored in one or more Azure Key Vaults.

    Uses DefaultAzureCredential for flexible authentication supporting:
    - Environment variables (Service Principal)
    - Managed Identity
    - Azure CLI credentials
    """

    def __init__(self, vault_urls: List[str], credential=None, client_factory=None):
        """
        Args:
            vault_urls: Full URLs of the Key Vaults to scan
            credential: Azure credential (defaults to DefaultAzureCredential)
            client_factory: Callable (vault_url, credential) -> CertificateClient

        Raises:
            CertificateSourceError: If the Azure SDK is not installed
        """
        if client_factory is None:
            if not AZURE_SDK_AVAILABLE:
                raise CertificateSourceError(
                    "Azure SDK not installed. "
                    "Install with: pip install azure-identity azure-keyvault-certificates"
                )
            client_factory = lambda url, cred: CertificateClient(vault_url=url, credential=cred)
            if credential is None:
                credential = DefaultAzureCredential()

        self.vault_urls = vault_urls
        self.credential = credential
        self.client_factory = client_factory
        self.logger = get_logger()

    @staticmethod
    def vault_name(vault_url: str) -> str:
        return vault_url.split("//")[1].split(".")[0]

    def _extract_domains(self, cer_bytes: Optional[bytes]) -> List[str]:
        if not cer_bytes:
            return []
        try:
            cert = x509.load_der_x509_certificate(cer_bytes)
        except ValueError as e:
            self.logger.warning(f"Error extracting domains: {e}")
            return []
        return extract_dns_names(cert)

    def _list_vault(self, vault_url: str) -> List[MonitoredCertificate]:
        vault_name = self.vault_name(vault_url)
        client = self.client_factory(vault_url, self.credential)
        certificates = []

        for props in client.list_properties_of_certificates():
            if props.enabled is False:
                self.logger.debug(f"Skipping disabled certificate {vault_name}/{props.name}")
                continue

            expires_on = props.expires_on
            if expires_on and expires_on.tzinfo is None:
                expires_on = expires_on.replace(tzinfo=timezone.utc)

            certificate = client.get_certificate(props.name)

            certificates.append(MonitoredCertificate(
                name=props.name,
                namespace=vault_name,
                not_after=expires_on,
                dns_names=self._extract_domains(certificate.cer),
                source="keyvault",
            ))

        return certificates

    def list_certificates(self) -> List[MonitoredCertificate]:
        certificates = []

        for vault_url in self.vault_urls:
            try:
                certificates.extend(self._list_vault(vault_url))
            except ClientAuthenticationError as e:
                raise CertificateSourceError(
                    f"Failed to authenticate to Azure Key Vault {vault_url}: {e}"
                )
            except AzureError as e:
                raise CertificateSourceError(
                    f"Failed to list certificates in {vault_url}: {e}"
                )

        self.logger.debug(f"Listed {len(certificates)} Key Vault certificate(s)")
        return certificates


class PemDirectoryCertificateSource(CertificateSource):
    """List PEM certificates (*.pem, *.crt, *.cer) found in a directory."""

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.logger = get_logger()

    def list_certificates(self) -> List[MonitoredCertificate]:
        if not self.directory.is_dir():
            raise CertificateSourceError(f"Certificate directory not found: {self.directory}")

        certificates = []
        for path in sorted(self.directory.iterdir()):
            if path.suffix.lower() not in PEM_SUFFIXES or not path.is_file():
                continue

            try:
                cert = x509.load_pem_x509_certificate(path.read_bytes())
            except (OSError, ValueError) as e:
                raise CertificateSourceError(f"Failed to load certificate {path}: {e}")

            certificates.append(MonitoredCertificate(
                name=path.stem,
                not_after=cert.not_valid_after_utc,
                dns_names=extract_dns_names(cert),
                source="pem-directory",
            ))

        self.logger.debug(f"Listed {len(certificates)} PEM certificate(s) in {self.directory}")
        return certificates
