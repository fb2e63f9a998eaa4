"""
OAuth 2.0 authorization-code exchange and identity normalization.

The provider access token obtained during the exchange stays inside this
module; callers only ever see a SocialUserInfo.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import urlparse

import httpx

from config import Settings, get_settings

logger = logging.getLogger(__name__)

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    },
    "github": {
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
    },
    "microsoft": {
        "token_url": "https://login.microsoftonline.com/common/oauth2/v2.0/token",
        "userinfo_url": "https://graph.microsoft.com/v1.0/me",
    },
}


def normalize_provider(provider: str) -> str:
    return (provider or "").strip().lower()


@dataclass
class SocialUserInfo:
    """Provider-neutral identity returned by a successful code exchange."""
    id: str
    email: str
    provider: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    # Only a provider-verified email may be matched to an existing account
    email_verified: bool = False


class IdentityNormalizer(Protocol):
    async def get_user_info(
        self, provider: str, code: str, redirect_uri: str
    ) -> Optional[SocialUserInfo]: ...


def _split_full_name(full_name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not full_name or not full_name.strip():
        return None, None
    parts = full_name.strip().split(" ", 1)
    return parts[0], (parts[1].strip() or None) if len(parts) > 1 else None


def _is_true(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def parse_userinfo(provider: str, userinfo: dict) -> dict:
    """Map one provider's profile payload onto the common field names."""
    if provider == "google":
        return {
            "id": userinfo.get("id") or userinfo.get("sub"),
            "email": userinfo.get("email"),
            "first_name": userinfo.get("given_name"),
            "last_name": userinfo.get("family_name"),
            "profile_picture_url": userinfo.get("picture"),
            # v2 userinfo says verified_email, OpenID Connect says email_verified
            "email_verified": _is_true(
                userinfo.get("verified_email", userinfo.get("email_verified"))
            ),
        }
    if provider == "github":
        first_name, last_name = _split_full_name(userinfo.get("name"))
        return {
            "id": userinfo.get("id"),
            "email": userinfo.get("email"),
            "first_name": first_name,
            "last_name": last_name,
            "profile_picture_url": userinfo.get("avatar_url"),
            # Checked against /user/emails after the exchange
            "email_verified": False,
        }
    if provider == "microsoft":
        return {
            "id": userinfo.get("id"),
            "email": userinfo.get("mail") or userinfo.get("userPrincipalName"),
            "first_name": userinfo.get("givenName"),
            "last_name": userinfo.get("surname"),
            # Microsoft requires a separate Graph API call for photos
            "profile_picture_url": None,
            # mail and userPrincipalName are set by the tenant
            "email_verified": False,
        }
    return {
        "id": userinfo.get("id") or userinfo.get("sub"),
        "email": userinfo.get("email"),
        "email_verified": False,
    }


class SocialAuthService:
    """Exchanges authorization codes with Google, GitHub and Microsoft."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        # Injected in tests; None means real network transport
        self._transport = transport

    def _get_oauth_credentials(self, provider: str) -> tuple[str, str]:
        if provider == "google":
            return self.settings.OAUTH_GOOGLE_CLIENT_ID, self.settings.OAUTH_GOOGLE_CLIENT_SECRET
        if provider == "github":
            return self.settings.OAUTH_GITHUB_CLIENT_ID, self.settings.OAUTH_GITHUB_CLIENT_SECRET
        if provider == "microsoft":
            return (
                self.settings.OAUTH_MICROSOFT_CLIENT_ID,
                self.settings.OAUTH_MICROSOFT_CLIENT_SECRET,
            )
        return "", ""

    @staticmethod
    def _is_valid_redirect_uri(redirect_uri: str) -> bool:
        parsed = urlparse(redirect_uri or "")
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)

    async def get_user_info(
        self, provider: str, code: str, redirect_uri: str
    ) -> Optional[SocialUserInfo]:
        """
        Exchange ``code`` for the provider's profile, normalized.

        Returns None (never raises) when the provider is unknown or not
        configured, the redirect URI is unusable, the code is rejected, or
        the profile lacks an id or email.
        """
        provider = normalize_provider(provider)
        if provider not in OAUTH_PROVIDERS:
            logger.warning(f"Unknown OAuth provider requested: {provider!r}")
            return None

        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            logger.error(f"OAuth credentials missing for provider {provider}")
            return None

        if not code:
            return None
        if not self._is_valid_redirect_uri(redirect_uri):
            logger.warning(f"Rejected OAuth redirect URI for provider {provider}")
            return None

        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.OAUTH_HTTP_TIMEOUT_SECONDS,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()

                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    # GitHub answers 200 with {"error": "bad_verification_code"}
                    logger.warning(f"OAuth code exchange returned no access token ({provider})")
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"

                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error(f"OAuth userinfo has unexpected shape ({provider})")
                    return None

                identity = parse_userinfo(provider, userinfo)

                if provider == "github":
                    verified = await self._fetch_github_verified_emails(
                        client, provider_config["emails_url"], userinfo_headers
                    )
                    public_email = (identity.get("email") or "").strip().lower()
                    if public_email and public_email in verified:
                        identity["email_verified"] = True
                    else:
                        primary = next((e for e, is_primary in verified.items() if is_primary), None)
                        if primary:
                            identity["email"] = primary
                            identity["email_verified"] = True
        except httpx.HTTPStatusError as e:
            logger.warning(
                f"OAuth exchange rejected by {provider}: HTTP {e.response.status_code}"
            )
            return None
        except httpx.HTTPError as e:
            logger.error(f"OAuth exchange with {provider} failed: {e.__class__.__name__}")
            return None
        except ValueError:
            # Response body was not JSON
            logger.error(f"OAuth exchange with {provider} returned a malformed body")
            return None

        if not identity.get("id"):
            logger.error(f"OAuth identity from {provider} has no user id")
            return None
        if not identity.get("email"):
            logger.error(f"OAuth identity from {provider} has no email")
            return None

        logger.info(f"OAuth exchange succeeded for {provider}")
        return SocialUserInfo(
            id=str(identity["id"]),
            email=str(identity["email"]).strip().lower(),
            provider=provider,
            first_name=identity.get("first_name"),
            last_name=identity.get("last_name"),
            profile_picture_url=identity.get("profile_picture_url"),
            email_verified=identity.get("email_verified", False),
        )

    @staticmethod
    async def _fetch_github_verified_emails(
        client: httpx.AsyncClient, emails_url: str, headers: dict
    ) -> dict[str, bool]:
        """Verified addresses on the GitHub account, mapped to whether each is primary."""
        response = await client.get(emails_url, headers=headers)
        if response.status_code != 200:
            return {}
        emails = response.json()
        if not isinstance(emails, list):
            return {}
        return {
            str(e["email"]).strip().lower(): bool(e.get("primary"))
            for e in emails
            if isinstance(e, dict) and e.get("email") and e.get("verified") is True
        }
