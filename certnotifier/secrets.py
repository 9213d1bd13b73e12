"""
Credential resolution.

Resolves a CredentialReference to its plaintext value at use time.
Values are never cached, so a rotated secret takes effect on the
next notification cycle.
"""

import base64
import binascii
import os
import re
from abc import ABC, abstractmethod
from typing import Optional

from kubernetes.client.rest import ApiException

from .config_loader import CredentialReference
from .logger import get_logger


class CredentialError(Exception):
    """Raised when a credential cannot be resolved."""
    pass


class SecretNotFoundError(CredentialError):
    """Raised when the referenced secret does not exist."""

    def __init__(self, secret_name: str, scope: str):
        self.secret_name = secret_name
        self.scope = scope
        super().__init__(f"secret {secret_name} not found in {scope}")


class SecretKeyNotFoundError(CredentialError):
    """Raised when the secret exists but does not contain the requested key."""

    def __init__(self, key: str, secret_name: str, scope: str):
        self.key = key
        self.secret_name = secret_name
        self.scope = scope
        super().__init__(f"key {key} not found in secret {secret_name} ({scope})")


class CredentialResolver(ABC):
    """Resolves credential references against a secret store."""

    def scope_for(self, ref: CredentialReference, default_scope: str) -> str:
        return ref.scope or default_scope

    @abstractmethod
    def resolve(self, ref: CredentialReference, default_scope: str) -> str:
        """
        Resolve a credential reference to its plaintext value.

        Args:
            ref: Reference to resolve
            default_scope: Scope used when the reference carries none
                           (the namespace of the requesting policy)

        Returns:
            Secret value

        Raises:
            SecretNotFoundError: If the secret does not exist
            SecretKeyNotFoundError: If the secret lacks the key
        """
        pass


class KubernetesSecretResolver(CredentialResolver):
    """Resolve credentials from Kubernetes Secrets."""

    def __init__(self, core_v1_api):
        """
        Args:
            core_v1_api: kubernetes.client.CoreV1Api instance
        """
        self.core_v1 = core_v1_api
        self.logger = get_logger()

    def resolve(self, ref: CredentialReference, default_scope: str) -> str:
        namespace = self.scope_for(ref, default_scope)

        try:
            secret = self.core_v1.read_namespaced_secret(name=ref.name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                raise SecretNotFoundError(ref.name, namespace)
            raise CredentialError(
                f"Failed to read secret {namespace}/{ref.name}: {e.status} {e.reason}"
            )

        data = secret.data or {}
        if ref.key in data:
            try:
                value = base64.b64decode(data[ref.key]).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise CredentialError(
                    f"Key {ref.key} in secret {namespace}/{ref.name} is not valid base64 text: {e}"
                )
        elif ref.key in (secret.string_data or {}):
            value = secret.string_data[ref.key]
        else:
            raise SecretKeyNotFoundError(ref.key, ref.name, namespace)

        self.logger.debug(f"Resolved credential {namespace}/{ref.name}[{ref.key}]")
        return value


class EnvironmentSecretResolver(CredentialResolver):
    """
    Resolve credentials from environment variables.

    A reference (name="smtp-credentials", key="password") maps to the
    variable CERTNOTIFIER_SECRET_SMTP_CREDENTIALS__PASSWORD. Name and key are
    joined by a double underscore, which normalization never produces, so
    "smtp" and "smtp-credentials" are distinct secrets. Scope is ignored:
    the process environment is a single scope.
    """

    PREFIX = "CERTNOTIFIER_SECRET_"
    SEPARATOR = "__"

    def __init__(self, environ: Optional[dict] = None):
        self.environ = environ if environ is not None else os.environ
        self.logger = get_logger()

    @staticmethod
    def _normalize(value: str) -> str:
        return re.sub(r"[^A-Za-z0-9]+", "_", value).strip("_").upper()

    def variable_name(self, ref: CredentialReference) -> str:
        return f"{self.PREFIX}{self._normalize(ref.name)}{self.SEPARATOR}{self._normalize(ref.key)}"

    def resolve(self, ref: CredentialReference, default_scope: str) -> str:
        scope = "environment"
        container_prefix = f"{self.PREFIX}{self._normalize(ref.name)}{self.SEPARATOR}"

        if not any(name.startswith(container_prefix) for name in self.environ):
            raise SecretNotFoundError(ref.name, scope)

        variable = self.variable_name(ref)
        if variable not in self.environ:
            raise SecretKeyNotFoundError(ref.key, ref.name, scope)

        self.logger.debug(f"Resolved credential {ref.name}[{ref.key}] from {variable}")
        return self.environ[variable]
