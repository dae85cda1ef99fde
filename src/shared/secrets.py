"""
Secrets and keychain integration: retrieves credentials from the
system keychain.

Credentials are **never** stored in config files or source code.  They
live in the system keychain (``secret-tool`` / ``libsecret``) and are
retrieved at runtime.  Environment variables are accepted as a
development fallback only.
"""

from __future__ import annotations

import logging
import os
import subprocess

logger = logging.getLogger("shared.secrets")

_DEFAULT_SERVICE = "inbox-sync"
_ENV_PREFIX = "INBOX_SYNC_"


def _env_key(key_name: str) -> str:
    return _ENV_PREFIX + key_name.upper().replace("-", "_")


def get_secret(key_name: str, service: str = _DEFAULT_SERVICE) -> str:
    """Retrieve a secret from the system keychain.

    Uses ``secret-tool`` (libsecret) under the hood::

        secret-tool lookup service inbox-sync key <key_name>

    Falls back to ``INBOX_SYNC_<KEY_NAME>`` when ``secret-tool`` is missing
    or has no entry (e.g. in development environments).

    Args:
        key_name: The key identifier (``"unipile-api-key"``,
                  ``"database-password"``).
        service: The service label in the keychain.

    Raises:
        RuntimeError: If the secret is not found in the keychain or env.
    """
    try:
        result = subprocess.run(
            ["secret-tool", "lookup", "service", service, "key", key_name],
            capture_output=True,
            text=True,
            timeout=10,
        )
        secret = result.stdout.strip()
        if secret:
            return secret
    except FileNotFoundError:
        logger.warning("secret-tool not found; falling back to environment variable")
    except subprocess.TimeoutExpired:
        logger.warning("secret-tool timed out; falling back to environment variable")
    except OSError:
        logger.warning(
            "secret-tool failed; falling back to environment variable",
            exc_info=True,
        )

    env_key = _env_key(key_name)
    env_val = os.environ.get(env_key)
    if env_val:
        logger.warning("Using env var fallback for secret '%s' (%s)", key_name, env_key)
        return env_val

    raise RuntimeError(
        f"Secret '{key_name}' not found in keychain (service={service}) "
        f"or environment variable {env_key}"
    )
