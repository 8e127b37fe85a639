"""Credential resolution for the Azure Resource Manager API.

Three strategies are supported. When more than one is configured the first
match wins, in this order:

1. Managed identity extension (local metadata endpoint, nothing else needed)
2. AAD application client secret
3. AAD application client certificate (PKCS#12 bundle + password)

The resulting TokenCredential is created once and shared by reference by
every management client.
"""

from __future__ import annotations

import logging
from pathlib import Path

from azure.core.credentials import TokenCredential
from azure.identity import CertificateCredential, ClientSecretCredential, ManagedIdentityCredential
from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from .config import CloudConfig
from .environment import CloudEnvironment
from .errors import (
    CertificateLoadError,
    InvalidCredentialConfig,
    NoCredentialsAvailable,
    UnsupportedKeyType,
)

logger = logging.getLogger(__name__)

STRATEGY_MANAGED_IDENTITY = "managed-identity"
STRATEGY_CLIENT_SECRET = "client-secret"
STRATEGY_CLIENT_CERTIFICATE = "client-certificate"


def configured_strategies(config: CloudConfig) -> list[str]:
    """List the credential strategies populated in config, in precedence order."""
    strategies = []
    if config.use_managed_identity_extension:
        strategies.append(STRATEGY_MANAGED_IDENTITY)
    if config.aad_client_secret:
        strategies.append(STRATEGY_CLIENT_SECRET)
    if config.aad_client_cert_path and config.aad_client_cert_password:
        strategies.append(STRATEGY_CLIENT_CERTIFICATE)
    return strategies


def decode_pkcs12(
    data: bytes, password: str
) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
    """Decode a PKCS#12 client certificate bundle.

    Args:
        data: Raw bundle bytes.
        password: Bundle password.

    Returns:
        Tuple of (certificate, RSA private key).

    Raises:
        ValueError: If the bundle cannot be decoded or lacks a key/certificate.
        UnsupportedKeyType: If the private key is not an RSA key.
    """
    private_key, certificate, _ = pkcs12.load_key_and_certificates(
        data, password.encode("utf-8")
    )
    if private_key is None or certificate is None:
        raise ValueError("bundle must contain a certificate and a private key")
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise UnsupportedKeyType(
            f"PKCS#12 certificate must contain a RSA private key, got {type(private_key).__name__}"
        )
    return certificate, private_key


def load_client_certificate(path: str, password: str) -> bytes:
    """Load a PKCS#12 bundle from disk and return it as PEM (key + certificate).

    Raises:
        CertificateLoadError: If the file cannot be read or decoded.
        UnsupportedKeyType: If the embedded key is not RSA.
    """
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise CertificateLoadError(path, f"reading file: {e}") from e

    try:
        certificate, private_key = decode_pkcs12(data, password)
    except ValueError as e:
        raise CertificateLoadError(path, f"decoding the PKCS#12 client certificate: {e}") from e

    key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return key_pem + certificate.public_bytes(serialization.Encoding.PEM)


def _missing_fields(config: CloudConfig) -> list[str]:
    fields = (("tenantId", config.tenant_id), ("aadClientId", config.aad_client_id))
    return [name for name, value in fields if not value]


def _invalid(strategy: str, config: CloudConfig, error: ValueError) -> InvalidCredentialConfig:
    missing = _missing_fields(config)
    if missing:
        return InvalidCredentialConfig(
            f"{strategy} credential requires {', '.join(missing)}: {error}"
        )
    return InvalidCredentialConfig(f"{strategy} credential rejected configuration: {error}")


def resolve_credential(config: CloudConfig, env: CloudEnvironment) -> TokenCredential:
    """Build the token credential selected by configuration.

    Args:
        config: Cloud configuration.
        env: Target cloud environment.

    Returns:
        A TokenCredential for the resource manager.

    Raises:
        NoCredentialsAvailable: If no strategy is configured.
        CertificateLoadError: If the client certificate cannot be loaded.
        UnsupportedKeyType: If the client certificate key is not RSA.
        InvalidCredentialConfig: If the selected credential rejects its settings,
            such as an empty tenant ID.
    """
    strategies = configured_strategies(config)
    if len(strategies) > 1:
        logger.warning(
            "Multiple credential strategies configured, using %s",
            strategies[0],
            extra={"ignored_strategies": strategies[1:]},
        )

    if config.use_managed_identity_extension:
        logger.info("Using managed identity extension to retrieve access token")
        return ManagedIdentityCredential()

    if config.aad_client_secret:
        logger.info(
            "Using client_id+client_secret to retrieve access token",
            extra={"client_id": config.aad_client_id},
        )
        try:
            return ClientSecretCredential(
                tenant_id=config.tenant_id,
                client_id=config.aad_client_id,
                client_secret=config.aad_client_secret,
                authority=env.authority_host,
            )
        except ValueError as e:
            raise _invalid(STRATEGY_CLIENT_SECRET, config, e) from e

    if config.aad_client_cert_path and config.aad_client_cert_password:
        logger.info(
            "Using client certificate to retrieve access token",
            extra={"client_id": config.aad_client_id, "cert_path": config.aad_client_cert_path},
        )
        pem = load_client_certificate(config.aad_client_cert_path, config.aad_client_cert_password)
        try:
            return CertificateCredential(
                tenant_id=config.tenant_id,
                client_id=config.aad_client_id,
                certificate_data=pem,
                authority=env.authority_host,
            )
        except ValueError as e:
            raise _invalid(STRATEGY_CLIENT_CERTIFICATE, config, e) from e

    raise NoCredentialsAvailable(
        f"No credentials provided for AAD application {config.aad_client_id!r}"
    )
