"""OAuth token lifecycle for saved email accounts.

Decides whether an OAuth account can be used right now, refreshes the access
token through an ordered list of strategies when it is about to expire, and
persists the refreshed token. Password accounts pass straight through.

Usage:
    from mailmcp.tools.email.token_manager import TokenManager

    manager = TokenManager(store)
    account = manager.ensure_usable(account)  # raises AuthExpiredError
"""
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

import httpx

from mailmcp.core.settings import Settings, get_settings
from mailmcp.tools.email.credential_store import CredentialStore, EmailAccount, utcnow
from mailmcp.tools.email.errors import AuthExpiredError

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = 3600


class TokenRefreshError(Exception):
    """A single refresh strategy failed."""


@dataclass
class TokenGrant:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass
class TokenStatus:
    is_expired: bool
    expires_in: float  # seconds, inf when unknown
    needs_refresh: bool


class RefreshStrategy(Protocol):
    name: str

    def refresh(self, account: EmailAccount) -> TokenGrant: ...


def _expiry_from_value(value: Any) -> datetime | None:
    """Interpret an expiry as epoch milliseconds or an ISO string."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise TokenRefreshError(f"Token expiry out of range: {value}") from e
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _expiry_from_lifetime(payload: dict[str, Any]) -> datetime:
    try:
        seconds = int(payload.get("expires_in") or DEFAULT_TOKEN_LIFETIME)
    except (TypeError, ValueError):
        seconds = DEFAULT_TOKEN_LIFETIME
    try:
        return utcnow() + timedelta(seconds=seconds)
    except OverflowError as e:
        raise TokenRefreshError(f"Token lifetime out of range: {seconds}") from e


def _post_with_retries(
    client: httpx.Client,
    attempts: int,
    url: str,
    **kwargs: Any,
) -> httpx.Response:
    """POST, retrying transport errors up to ``attempts`` times."""
    last_error: Exception | None = None
    for attempt in range(1, max(attempts, 1) + 1):
        try:
            return client.post(url, **kwargs)
        except httpx.TransportError as e:
            last_error = e
            logger.warning("Token refresh request to %s failed (attempt %d): %s", url, attempt, e)
    raise TokenRefreshError(f"Refresh endpoint unreachable: {last_error}")


class RefreshEndpointStrategy:
    """Refresh through the hosted OAuth helper service."""

    name = "refresh-endpoint"

    def __init__(self, url: str, client: httpx.Client, attempts: int = 2):
        self._url = url
        self._client = client
        self._attempts = attempts

    def refresh(self, account: EmailAccount) -> TokenGrant:
        response = _post_with_retries(
            self._client,
            self._attempts,
            self._url,
            json={"email": account.email, "refresh_token": account.refresh_token},
        )
        if not response.is_success:
            raise TokenRefreshError(
                f"Refresh endpoint returned {response.status_code}: {response.text[:200]}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise TokenRefreshError(f"Refresh endpoint returned malformed JSON: {e}") from e
        if not isinstance(payload, dict):
            raise TokenRefreshError("Refresh endpoint returned a non-object payload")
        if payload.get("success") is False:
            raise TokenRefreshError(payload.get("message") or "Refresh endpoint reported failure")

        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        access_token = data.get("access_token")
        if not access_token:
            raise TokenRefreshError("Refresh endpoint response has no access_token")

        expires_at = (
            _expiry_from_value(data.get("expires_at"))
            or _expiry_from_value(data.get("expiry_date"))
            or _expiry_from_lifetime(data)
        )
        return TokenGrant(access_token, expires_at, data.get("refresh_token") or None)


class ProviderTokenStrategy:
    """Refresh directly against the OAuth provider's token endpoint."""

    name = "provider"

    def __init__(
        self,
        token_uri: str,
        client_id: str | None,
        client_secret: str | None,
        client: httpx.Client,
        attempts: int = 2,
    ):
        self._token_uri = token_uri
        self._client_id = client_id
        self._client_secret = client_secret
        self._client = client
        self._attempts = attempts

    def refresh(self, account: EmailAccount) -> TokenGrant:
        if not self._client_id or not self._client_secret:
            raise TokenRefreshError(
                "Google OAuth client configuration missing. "
                "Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET."
            )

        response = _post_with_retries(
            self._client,
            self._attempts,
            self._token_uri,
            data={
                "grant_type": "refresh_token",
                "refresh_token": account.refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            raise TokenRefreshError(
                f"OAuth token endpoint returned a non-object payload ({response.status_code})"
            )

        if not response.is_success or payload.get("error"):
            error = payload.get("error") or response.status_code
            raise TokenRefreshError(f"OAuth token refresh error: {error}")

        access_token = payload.get("access_token")
        if not access_token:
            raise TokenRefreshError("OAuth token response has no access_token")

        return TokenGrant(access_token, _expiry_from_lifetime(payload), payload.get("refresh_token") or None)


class TokenManager:
    """Keeps OAuth accounts usable, refreshing and persisting tokens."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings | None = None,
        strategies: list[RefreshStrategy] | None = None,
        http_client: httpx.Client | None = None,
    ):
        self._store = store
        self._settings = settings or get_settings()
        mail = self._settings.mail
        self._margin = timedelta(seconds=mail.refresh_margin_seconds)
        self._grace = timedelta(seconds=mail.sweep_grace_seconds)

        if strategies is None:
            client = http_client or httpx.Client(timeout=mail.operation_timeout)
            oauth = self._settings.oauth
            strategies = [
                RefreshEndpointStrategy(
                    self._settings.auth_service.refresh_url, client, mail.refresh_attempts
                ),
                ProviderTokenStrategy(
                    oauth.token_uri, oauth.client_id, oauth.client_secret, client, mail.refresh_attempts
                ),
            ]
        self._strategies = strategies

    def token_status(self, account: EmailAccount, now: datetime | None = None) -> TokenStatus:
        """Report expiry state without touching the network."""
        expiry = account.expiry
        if not account.is_oauth or expiry is None:
            return TokenStatus(is_expired=False, expires_in=float("inf"), needs_refresh=False)

        expires_in = (expiry - (now or utcnow())).total_seconds()
        return TokenStatus(
            is_expired=expires_in <= 0,
            expires_in=expires_in,
            needs_refresh=expires_in < self._margin.total_seconds(),
        )

    def ensure_usable(self, account: EmailAccount) -> EmailAccount:
        """Return an account whose credential is valid right now.

        Raises:
            AuthExpiredError: If the token expired and could not be refreshed.
        """
        if not self.token_status(account).needs_refresh:
            return account

        logger.info("OAuth token expires soon for %s, attempting refresh...", account.email)
        return self.refresh(account)

    def refresh(self, account: EmailAccount) -> EmailAccount:
        """Run the refresh strategies in order and persist the first success."""
        if not account.refresh_token:
            logger.error("No refresh token available for %s", account.email)
            raise AuthExpiredError(
                f"OAuth token for {account.email} expired and no refresh token is available. "
                "Please re-authenticate."
            )

        failures: list[str] = []
        for strategy in self._strategies:
            try:
                grant = strategy.refresh(account)
            except TokenRefreshError as e:
                logger.warning("Token refresh via %s failed for %s: %s", strategy.name, account.email, e)
                failures.append(f"{strategy.name}: {e}")
                continue

            updated = replace(
                account,
                access_token=grant.access_token,
                token_expiry=grant.expires_at.isoformat(),
                refresh_token=grant.refresh_token or account.refresh_token,
                active=True,
                last_login=utcnow().isoformat(),
            )
            self._store.upsert(updated)
            logger.info("OAuth token refreshed via %s for %s", strategy.name, account.email)
            return updated

        logger.error("All OAuth token refresh methods failed for %s", account.email)
        raise AuthExpiredError(
            f"OAuth token refresh failed for {account.email} ({'; '.join(failures)}). "
            "Please re-authenticate."
        )

    def sweep_expired_tokens(self, now: datetime | None = None) -> int:
        """Refresh long-expired OAuth tokens; soft-disable accounts that fail.

        Returns:
            Number of accounts that were refreshed.
        """
        now = now or utcnow()
        refreshed = 0
        try:
            accounts = self._store.list_all()
        except (IOError, OSError) as e:
            logger.error("Token sweep could not read storage: %s", e)
            return 0

        for account in accounts:
            expiry = account.expiry
            if not account.is_oauth or expiry is None or expiry >= now - self._grace:
                continue

            logger.warning("OAuth token expired for account: %s, attempting refresh...", account.email)
            try:
                self.refresh(account)
                refreshed += 1
            except AuthExpiredError:
                logger.warning("Failed to refresh token for %s, marking as inactive", account.email)
                try:
                    self._store.upsert(replace(account, active=False))
                except (IOError, OSError) as e:
                    logger.error("Could not deactivate %s: %s", account.email, e)
            except (IOError, OSError) as e:
                logger.error("Error refreshing token for %s: %s", account.email, e)

        logger.info("Completed OAuth token sweep (%d refreshed)", refreshed)
        return refreshed


class TokenSweeper:
    """Runs ``sweep_expired_tokens`` periodically on a daemon thread."""

    def __init__(self, manager: TokenManager, interval_seconds: float):
        self._manager = manager
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._interval <= 0 or self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="token-sweeper", daemon=True)
        self._thread.start()
        logger.info("Token sweeper started (every %ss)", self._interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self._manager.sweep_expired_tokens()
