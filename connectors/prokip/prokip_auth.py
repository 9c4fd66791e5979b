"""Prokip Authentication Provider.

Handles OAuth2 password-grant authentication against the Prokip API and
refresh-token renewal. Tokens live in memory only.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional

import aiohttp

from connectors.http_client import AuthenticationError, ConfigurationError, ConnectorError
from core.observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProkipAuthConfig:
    """Configuration for Prokip authentication.

    Attributes:
        api_url: Prokip base URL (e.g. "https://api.prokip.africa")
        client_id: OAuth client ID
        client_secret: OAuth client secret
        username: Prokip user (email)
        password: Prokip password
    """
    api_url: str
    client_id: str
    client_secret: str
    username: str
    password: str
    timeout_seconds: int = 15

    @property
    def token_endpoint(self) -> str:
        """Get the OAuth2 token endpoint."""
        return f"{self.api_url.rstrip('/')}/oauth/token"


@dataclass
class ProkipToken:
    """OAuth2 access token with expiration tracking."""
    access_token: str
    token_type: str
    expires_in: int
    refresh_token: Optional[str] = None
    obtained_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def expires_at(self) -> datetime:
        """When the token expires."""
        return self.obtained_at + timedelta(seconds=self.expires_in)

    @property
    def is_expired(self) -> bool:
        """Check if token is expired (with 5-minute buffer)."""
        buffer = timedelta(minutes=5)
        return datetime.utcnow() >= (self.expires_at - buffer)

    @property
    def authorization_header(self) -> str:
        """Get the Authorization header value."""
        return f"{self.token_type} {self.access_token}"


class ProkipAuthProvider:
    """Authentication provider for Prokip.

    Handles:
    - Password-grant OAuth2 flow
    - Refresh-token renewal, falling back to a full login
    - Token caching in memory

    Usage:
        auth = ProkipAuthProvider(config)
        await auth.authenticate()
        headers = await auth.get_headers()
    """

    def __init__(self, config: ProkipAuthConfig):
        self.config = config
        self._token: Optional[ProkipToken] = None

    def _validate(self) -> None:
        missing = [
            name for name in ("api_url", "client_id", "client_secret", "username", "password")
            if not getattr(self.config, name)
        ]
        if missing:
            raise ConfigurationError(
                f"Prokip configuration error: missing {', '.join(missing)}"
            )

    async def authenticate(self) -> bool:
        """Obtain an access token with the password grant.

        Returns:
            True if authentication successful

        Raises:
            ConfigurationError: Credentials are not configured
            AuthenticationError: Prokip rejected the credentials
        """
        self._validate()
        data = {
            "grant_type": "password",
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "username": self.config.username,
            "password": self.config.password,
            "scope": "",
        }
        self._token = await self._fetch_token(data)
        logger.info("Authenticated with Prokip")
        return True

    async def refresh(self) -> bool:
        """Renew the access token.

        Uses the refresh token when one is held; a rejected refresh falls
        back to a full password login.
        """
        if self._token and self._token.refresh_token:
            data = {
                "grant_type": "refresh_token",
                "refresh_token": self._token.refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            }
            try:
                self._token = await self._fetch_token(data)
                logger.info("Refreshed Prokip access token")
                return True
            except AuthenticationError:
                logger.warning("Prokip refresh token rejected, logging in again")
        return await self.authenticate()

    async def _fetch_token(self, data: Dict[str, str]) -> ProkipToken:
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(
                    self.config.token_endpoint,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                ) as response:
                    body = await response.text()
                    if response.status in (400, 401, 403):
                        raise AuthenticationError(
                            f"Prokip token request unauthorized - invalid credentials ({response.status})",
                            response.status,
                            body,
                        )
                    if response.status != 200:
                        raise ConnectorError(
                            f"Prokip token request failed: {response.status}",
                            response.status,
                            body,
                        )
                    token_data = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ConnectorError(f"Network error reaching Prokip: {e}")

        if not token_data.get("access_token"):
            raise AuthenticationError("Invalid token response from Prokip - missing access_token")

        return ProkipToken(
            access_token=token_data["access_token"],
            token_type=token_data.get("token_type", "Bearer"),
            expires_in=int(token_data.get("expires_in", 3600)),
            refresh_token=token_data.get("refresh_token"),
        )

    def get_token(self) -> Optional[ProkipToken]:
        """Get the current access token if still valid."""
        if self._token and not self._token.is_expired:
            return self._token
        return None

    async def ensure_valid_token(self) -> bool:
        """Ensure we have a valid (non-expired) token, refreshing if needed."""
        if self._token and not self._token.is_expired:
            return True
        if self._token:
            return await self.refresh()
        return await self.authenticate()

    async def get_headers(self) -> Dict[str, str]:
        """Authorization headers for an API call."""
        await self.ensure_valid_token()
        return {"Authorization": self._token.authorization_header}

    def clear(self) -> None:
        """Forget the cached token."""
        self._token = None
