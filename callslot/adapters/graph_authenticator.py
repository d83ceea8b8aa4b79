"""
Per-callee Microsoft Graph credentials using MSAL.

Each callee connects their calendar once through the Device Code Flow. The
resulting token cache is stored per callee in the OS keyring (plaintext file
fallback when the keyring backend fails) and used for silent token
acquisition afterwards.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

import keyring
import msal
from keyring.errors import KeyringError, PasswordDeleteError

from ..domain.exceptions import AuthError

logger = logging.getLogger(__name__)


KEYRING_SERVICE_NAME = "callslot"


class GraphAuthenticator:
    """
    Handles per-callee authentication with Microsoft Graph.

    Connecting uses the Device Code Flow, ideal for a CLI:
    1. The callee runs ``callslot connect-calendar``
    2. The app displays a code and URL
    3. The callee visits the URL and enters the code
    4. The callee grants calendar permissions
    5. The token cache is stored under the callee's id
    """

    # Read free/busy and write booked-call events
    SCOPES = ["Calendars.ReadWrite"]

    def __init__(
        self,
        client_id: str,
        tenant_id: str = "common",
        authority_url: str | None = None,
        cache_dir: Path | None = None,
    ):
        """
        Initialize the authenticator.

        Args:
            client_id: Azure AD application (client) ID
            tenant_id: Azure AD tenant ID
            authority_url: Optional custom authority URL
            cache_dir: Directory for plaintext cache files (keyring fallback)
        """
        self.client_id = client_id
        self.tenant_id = tenant_id
        self.authority = authority_url or f"https://login.microsoftonline.com/{tenant_id}"
        self.cache_dir = cache_dir or Path.home() / ".callslot" / "tokens"

        self._keyring_supported = True
        self._apps: Dict[str, msal.PublicClientApplication] = {}
        self._caches: Dict[str, msal.SerializableTokenCache] = {}
        self._lock = threading.Lock()

    @property
    def cache_backend(self) -> str:
        """Return the active cache backend (keyring or file)."""
        return "keyring" if self._keyring_supported else "file"

    def _cache_file(self, subject_id: str) -> Path:
        return self.cache_dir / f"{subject_id}.json"

    def _app_for(self, subject_id: str) -> msal.PublicClientApplication:
        with self._lock:
            app = self._apps.get(subject_id)
            if app is None:
                cache = self._load_cache(subject_id)
                app = msal.PublicClientApplication(
                    client_id=self.client_id,
                    authority=self.authority,
                    token_cache=cache,
                )
                self._apps[subject_id] = app
                self._caches[subject_id] = cache
            return app

    def _load_cache(self, subject_id: str) -> msal.SerializableTokenCache:
        """Load token cache from keyring or disk if it exists."""
        cache = msal.SerializableTokenCache()

        serialized = self._load_cache_from_keyring(subject_id)
        if serialized is None:
            serialized = self._load_cache_from_file(subject_id)

        if serialized:
            try:
                cache.deserialize(serialized)
            except ValueError as exc:
                logger.warning("Could not deserialize token cache of %s: %s", subject_id, exc)

        return cache

    def _load_cache_from_keyring(self, subject_id: str) -> Optional[str]:
        if not self._keyring_supported:
            return None

        try:
            return keyring.get_password(KEYRING_SERVICE_NAME, subject_id)
        except KeyringError as exc:  # pragma: no cover - environment dependent
            self._handle_keyring_failure(f"reading credentials failed: {exc}")
            return None

    def _load_cache_from_file(self, subject_id: str) -> Optional[str]:
        cache_file = self._cache_file(subject_id)
        if cache_file.exists():
            try:
                return cache_file.read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning("Could not load token cache file %s: %s", cache_file, exc)
        return None

    def _save_cache(self, subject_id: str) -> None:
        """Save a callee's token cache to the configured backend."""
        cache = self._caches.get(subject_id)
        if cache is None or not cache.has_state_changed:
            return

        serialized = cache.serialize()

        if self._keyring_supported:
            try:
                keyring.set_password(KEYRING_SERVICE_NAME, subject_id, serialized)
                return
            except KeyringError as exc:  # pragma: no cover - environment dependent
                self._handle_keyring_failure(f"writing credentials failed: {exc}")

        cache_file = self._cache_file(subject_id)
        try:
            cache_file.parent.mkdir(parents=True, exist_ok=True)
            cache_file.write_text(serialized, encoding="utf-8")
            cache_file.chmod(0o600)
        except OSError as exc:
            logger.warning("Could not save token cache to %s: %s", cache_file, exc)

    def _handle_keyring_failure(self, reason: str) -> None:
        if self._keyring_supported:
            logger.warning(
                "Secure credential storage unavailable (%s). Falling back to plaintext cache in %s.",
                reason,
                self.cache_dir,
            )
        self._keyring_supported = False

    def get_access_token(self, subject_id: str) -> Optional[str]:
        """
        Get a valid access token for a callee without user interaction.

        Returns:
            Access token, or None when the callee never connected a calendar

        Raises:
            AuthError: A stored credential exists but can no longer be refreshed
        """
        app = self._app_for(subject_id)
        accounts = app.get_accounts()
        if not accounts:
            return None

        result = app.acquire_token_silent(scopes=self.SCOPES, account=accounts[0])
        if result and "access_token" in result:
            self._save_cache(subject_id)
            return result["access_token"]

        error = (result or {}).get("error_description", "token refresh failed")
        raise AuthError(
            f"Stored calendar credential for {subject_id} is no longer valid: {error}. "
            "Reconnect the calendar."
        )

    def connect(self, subject_id: str, prompt: Callable[[dict], None]) -> str:
        """
        Perform device code flow authentication for a callee.

        Args:
            subject_id: Callee id the credential is stored under
            prompt: Receives the MSAL flow dict to show the code and URL

        Returns:
            Access token

        Raises:
            AuthError: If authentication fails
        """
        app = self._app_for(subject_id)

        try:
            flow = app.initiate_device_flow(scopes=self.SCOPES)
        except Exception as exc:  # pragma: no cover - MSAL internal failure
            raise AuthError(f"Failed to initiate device flow: {exc}") from exc

        if "user_code" not in flow:
            raise AuthError(
                f"Failed to initiate device flow: {flow.get('error_description', 'Unknown error')}"
            )

        prompt(flow)

        # Blocks until the user completes authentication or the flow expires
        result = app.acquire_token_by_device_flow(flow)

        if "access_token" not in result:
            error = result.get("error_description", "Unknown error")
            raise AuthError(f"Authentication failed: {error}")

        self._save_cache(subject_id)
        logger.info("Calendar connected for %s", subject_id)
        return result["access_token"]

    def disconnect(self, subject_id: str) -> None:
        """Forget a callee's stored credential."""
        cache_file = self._cache_file(subject_id)
        if cache_file.exists():
            cache_file.unlink()
        try:
            keyring.delete_password(KEYRING_SERVICE_NAME, subject_id)
        except PasswordDeleteError:
            logger.debug("No keyring entry stored for %s", subject_id)
        except KeyringError as exc:  # pragma: no cover - environment dependent
            logger.warning("Could not remove credentials from keyring: %s", exc)

        with self._lock:
            self._apps.pop(subject_id, None)
            self._caches.pop(subject_id, None)
        logger.info("Calendar disconnected for %s", subject_id)
