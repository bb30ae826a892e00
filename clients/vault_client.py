"""
HashiCorp Vault access for the identity service.

AppRole login, KV v2 reads confined to the 'identity/' mount prefix, and a
per-process cache of whole secrets. Missing configuration or secrets stop
startup: there is no fallback to defaults.
"""

import os
import logging
from typing import Dict, Iterable

import hvac
from hvac.exceptions import InvalidPath, Unauthorized, Forbidden

logger = logging.getLogger(__name__)

_SECRET_PREFIX = "identity"

_vault_client_instance: "VaultClient | None" = None
# secret path -> field values
_secret_cache: Dict[str, Dict[str, str]] = {}


class VaultError(Exception):
    """A secret exists but cannot be used."""


def _shared_client() -> "VaultClient":
    global _vault_client_instance
    if _vault_client_instance is None:
        _vault_client_instance = VaultClient()
    return _vault_client_instance


def reset_vault_cache() -> None:
    """Forget the shared client and every cached secret."""
    global _vault_client_instance
    _vault_client_instance = None
    _secret_cache.clear()


class VaultClient:
    """AppRole-authenticated reader for secrets under identity/."""

    def __init__(
        self,
        vault_addr: str | None = None,
        vault_namespace: str | None = None,
        role_id: str | None = None,
        secret_id: str | None = None,
    ):
        """
        Log in immediately; arguments default to VAULT_* environment variables.

        Raises:
            ValueError: Address or AppRole credentials missing.
            PermissionError: Login rejected.
        """
        self.vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        if not self.vault_addr:
            raise ValueError("VAULT_ADDR environment variable is required")

        role_id = role_id or os.getenv("VAULT_ROLE_ID")
        secret_id = secret_id or os.getenv("VAULT_SECRET_ID")
        if not (role_id and secret_id):
            raise ValueError("VAULT_ROLE_ID and VAULT_SECRET_ID environment variables are required")

        namespace = vault_namespace or os.getenv("VAULT_NAMESPACE")
        if namespace:
            self.client = hvac.Client(url=self.vault_addr, namespace=namespace)
        else:
            self.client = hvac.Client(url=self.vault_addr)

        self._login(role_id, secret_id)
        logger.info(f"Vault client ready: {self.vault_addr}")

    def _login(self, role_id: str, secret_id: str) -> None:
        try:
            result = self.client.auth.approle.login(role_id=role_id, secret_id=secret_id)
        except Exception as e:
            logger.error(f"AppRole authentication failed: {e}")
            raise PermissionError(f"AppRole authentication failed: {e}")

        self.client.token = result["auth"]["client_token"]
        if not self.client.is_authenticated():
            raise PermissionError("Vault authentication failed")

    def read_secret(self, path: str) -> Dict[str, str]:
        """
        All fields of identity/<path>.

        Raises:
            PermissionError: Path missing or not readable by this role.
        """
        scoped = f"{_SECRET_PREFIX}/{path}"
        try:
            response = self.client.secrets.kv.v2.read_secret_version(
                path=scoped, raise_on_deleted_version=True
            )
        except InvalidPath:
            logger.error(f"Secret path not found: {scoped}")
            raise PermissionError(f"Secret path '{scoped}' not found in Vault")
        except (Unauthorized, Forbidden) as e:
            logger.error(f"Vault denied {scoped}: {e}")
            raise PermissionError(f"Access denied to secret '{scoped}': {e}")
        return response["data"]["data"]

    def get_secret(self, path: str, field: str) -> str:
        """
        One non-empty field of identity/<path>.

        Raises:
            PermissionError: Path missing or not readable.
            KeyError: Field absent.
            VaultError: Field present but empty.
        """
        return _pick(f"{_SECRET_PREFIX}/{path}", self.read_secret(path), [field])[field]


def _pick(scoped: str, data: Dict[str, str], fields: Iterable[str]) -> Dict[str, str]:
    picked = {}
    for field in fields:
        if field not in data:
            raise KeyError(
                f"Field '{field}' not found in secret '{scoped}'. "
                f"Available: {', '.join(data)}"
            )
        if not data[field]:
            raise VaultError(f"Field '{field}' in secret '{scoped}' is empty")
        picked[field] = data[field]
    return picked


def _get_fields(path: str, fields: Iterable[str]) -> Dict[str, str]:
    """Fields of one secret; the secret is fetched once per process."""
    if path not in _secret_cache:
        _secret_cache[path] = _shared_client().read_secret(path)
    return _pick(f"{_SECRET_PREFIX}/{path}", _secret_cache[path], fields)


def get_database_url() -> str:
    return _get_fields("database", ["url"])["url"]


def get_valkey_url() -> str:
    return _get_fields("valkey", ["url"])["url"]


def get_email_config() -> Dict[str, str]:
    """Email gateway settings: gateway_url, api_key, hmac_secret."""
    return _get_fields("email", ["gateway_url", "api_key", "hmac_secret"])


def get_jwt_config() -> Dict[str, str]:
    """Token signing secrets: access_secret, refresh_secret."""
    return _get_fields("jwt", ["access_secret", "refresh_secret"])
