"""Azure DevOps authentication: Entra ID token via the Azure CLI, PAT fallback."""

import base64
import json
import logging
import os
import subprocess
import threading
from datetime import datetime, timedelta

from otto.provider.base import ProviderError

# Azure DevOps application id for Entra ID token requests
ADO_RESOURCE_ID = "499b84ac-1321-427f-aa17-267ca6975798"

EXPIRY_MARGIN = timedelta(minutes=5)
DEFAULT_TOKEN_LIFETIME = timedelta(minutes=30)

LOG = logging.getLogger("otto.provider.ado.auth")


def _parse_expires_on(value: str) -> datetime:
    """Parse az CLI expiresOn (local time, with or without microseconds)."""
    for fmt in ("%Y-%m-%d %H:%M:%S.%f", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(value, fmt)
        except (ValueError, TypeError):
            continue
    LOG.warning("Could not parse token expiry %r, using 30-minute default", value)
    return datetime.now() + DEFAULT_TOKEN_LIFETIME


class AdoAuth:
    """Builds the Authorization header for ADO requests.

    The Entra token is cached until five minutes before its reported expiry.
    The cache is shared by every request of one backend and guarded by a lock.
    """

    def __init__(self, pat: str | None = None, az_command: str = "az", timeout: int = 60) -> None:
        self._pat = pat or os.environ.get("OTTO_ADO_PAT") or ""
        self._az = az_command
        self._timeout = timeout
        self._token = ""
        self._expiry: datetime | None = None
        self._lock = threading.Lock()

    def invalidate_token(self) -> None:
        """Drop the cached Entra token (ADO answered 203, i.e. a sign-in page)."""
        with self._lock:
            self._token = ""
            self._expiry = None

    def get_auth_header(self) -> str:
        with self._lock:
            if self._token and self._expiry and datetime.now() < self._expiry - EXPIRY_MARGIN:
                return f"Bearer {self._token}"
            try:
                token, expiry = self._get_entra_token()
            except ProviderError as e:
                LOG.debug("Entra ID token acquisition failed, falling back to PAT: %s", e)
                if self._pat:
                    encoded = base64.b64encode(f":{self._pat}".encode()).decode()
                    return f"Basic {encoded}"
                raise ProviderError(f"no authentication available: Entra ID failed ({e}) and no PAT configured") from e
            self._token = token
            self._expiry = expiry
            LOG.debug("Using Entra ID token for ADO authentication")
            return f"Bearer {token}"

    def _get_entra_token(self) -> tuple[str, datetime]:
        cmd = [self._az, "account", "get-access-token", "--resource", ADO_RESOURCE_ID, "--output", "json"]
        try:
            result = subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=self._timeout)
        except subprocess.CalledProcessError as e:
            raise ProviderError(f"az CLI failed: {(e.stderr or '').strip()}") from e
        except (subprocess.TimeoutExpired, FileNotFoundError) as e:
            raise ProviderError(f"az CLI failed: {e}") from e
        try:
            data = json.loads(result.stdout)
        except ValueError as e:
            raise ProviderError(f"failed to parse az CLI output: {e}") from e
        token = data.get("accessToken") or ""
        if not token:
            raise ProviderError("empty access token from az CLI")
        return token, _parse_expires_on(data.get("expiresOn") or "")
