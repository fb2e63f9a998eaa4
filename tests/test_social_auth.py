"""
Tests for the OAuth code exchange and provider profile normalization.
"""

from typing import Optional
from urllib.parse import parse_qs

import httpx
import pytest

from config import Settings
from services.social_auth import SocialAuthService, parse_userinfo

from conftest import TEST_SECRET_KEY

GOOGLE_TOKEN = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO = "https://www.googleapis.com/oauth2/v2/userinfo"
GITHUB_TOKEN = "https://github.com/login/oauth/access_token"
GITHUB_USER = "https://api.github.com/user"
GITHUB_EMAILS = "https://api.github.com/user/emails"
MICROSOFT_TOKEN = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
MICROSOFT_ME = "https://graph.microsoft.com/v1.0/me"

REDIRECT_URI = "https://app.example.com/auth/callback"


def make_transport(responses: dict, seen: Optional[list] = None) -> httpx.MockTransport:
    """Answer each URL (without query) from ``responses``; 404 otherwise."""

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        result = responses.get(url)
        if result is None:
            return httpx.Response(404)
        if isinstance(result, Exception):
            raise result
        return result

    return httpx.MockTransport(handler)


def _token_ok() -> httpx.Response:
    return httpx.Response(200, json={"access_token": "provider-access-token", "token_type": "bearer"})


class TestGoogleExchange:
    @pytest.mark.asyncio
    async def test_success(self, settings):
        seen = []
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    GOOGLE_TOKEN: _token_ok(),
                    GOOGLE_USERINFO: httpx.Response(
                        200,
                        json={
                            "id": "1234567890",
                            "email": "Bob@Example.com",
                            "given_name": "Bob",
                            "family_name": "Builder",
                            "picture": "https://images.example.com/bob.png",
                            "verified_email": True,
                        },
                    ),
                },
                seen,
            ),
        )

        info = await service.get_user_info("Google", "auth-code", REDIRECT_URI)

        assert info.id == "1234567890"
        assert info.email == "bob@example.com"
        assert info.provider == "google"
        assert info.first_name == "Bob"
        assert info.last_name == "Builder"
        assert info.profile_picture_url == "https://images.example.com/bob.png"
        assert info.email_verified is True
        assert not hasattr(info, "access_token")

        token_request, userinfo_request = seen
        form = parse_qs(token_request.content.decode())
        assert form["code"] == ["auth-code"]
        assert form["client_id"] == ["google-client"]
        assert form["redirect_uri"] == [REDIRECT_URI]
        assert form["grant_type"] == ["authorization_code"]
        assert userinfo_request.headers["Authorization"] == "Bearer provider-access-token"

    @pytest.mark.asyncio
    async def test_rejected_code(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {GOOGLE_TOKEN: httpx.Response(400, json={"error": "invalid_grant"})}
            ),
        )

        assert await service.get_user_info("google", "expired-code", REDIRECT_URI) is None

    @pytest.mark.asyncio
    async def test_network_failure(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport({GOOGLE_TOKEN: httpx.ConnectError("connection refused")}),
        )

        assert await service.get_user_info("google", "code", REDIRECT_URI) is None

    @pytest.mark.asyncio
    async def test_malformed_body(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport({GOOGLE_TOKEN: httpx.Response(200, text="<html>oops</html>")}),
        )

        assert await service.get_user_info("google", "code", REDIRECT_URI) is None

    @pytest.mark.asyncio
    async def test_profile_without_email(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    GOOGLE_TOKEN: _token_ok(),
                    GOOGLE_USERINFO: httpx.Response(200, json={"id": "1"}),
                }
            ),
        )

        assert await service.get_user_info("google", "code", REDIRECT_URI) is None

    @pytest.mark.asyncio
    async def test_unverified_email_is_flagged(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    GOOGLE_TOKEN: _token_ok(),
                    GOOGLE_USERINFO: httpx.Response(
                        200, json={"id": "1", "email": "bob@example.com", "verified_email": False}
                    ),
                }
            ),
        )

        info = await service.get_user_info("google", "code", REDIRECT_URI)

        assert info.email == "bob@example.com"
        assert info.email_verified is False


class TestGithubExchange:
    @pytest.mark.asyncio
    async def test_error_in_200_response(self, settings):
        """GitHub reports bad codes with a 200 and an error field."""
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {GITHUB_TOKEN: httpx.Response(200, json={"error": "bad_verification_code"})}
            ),
        )

        assert await service.get_user_info("github", "code", REDIRECT_URI) is None

    @pytest.mark.asyncio
    async def test_private_email_uses_primary_verified(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    GITHUB_TOKEN: _token_ok(),
                    GITHUB_USER: httpx.Response(
                        200,
                        json={
                            "id": 4242,
                            "email": None,
                            "name": "Grace Brewster Hopper",
                            "avatar_url": "https://avatars.example.com/4242",
                        },
                    ),
                    GITHUB_EMAILS: httpx.Response(
                        200,
                        json=[
                            {"email": "old@example.com", "primary": False, "verified": True},
                            {"email": "Grace@Example.com", "primary": True, "verified": True},
                        ],
                    ),
                }
            ),
        )

        info = await service.get_user_info("github", "code", REDIRECT_URI)

        assert info.id == "4242"
        assert info.email == "grace@example.com"
        assert info.first_name == "Grace"
        assert info.last_name == "Brewster Hopper"
        assert info.profile_picture_url == "https://avatars.example.com/4242"
        assert info.email_verified is True

    @pytest.mark.asyncio
    async def test_no_verified_email(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    GITHUB_TOKEN: _token_ok(),
                    GITHUB_USER: httpx.Response(200, json={"id": 1, "email": None}),
                    GITHUB_EMAILS: httpx.Response(
                        200, json=[{"email": "x@example.com", "primary": True, "verified": False}]
                    ),
                }
            ),
        )

        assert await service.get_user_info("github", "code", REDIRECT_URI) is None

    @pytest.mark.asyncio
    async def test_public_email_checked_against_verified_list(self, settings):
        seen = []
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    GITHUB_TOKEN: _token_ok(),
                    GITHUB_USER: httpx.Response(200, json={"id": 7, "email": "Ada@Example.com"}),
                    GITHUB_EMAILS: httpx.Response(
                        200,
                        json=[
                            {"email": "ada@example.com", "primary": False, "verified": True},
                            {"email": "ada@work.example.com", "primary": True, "verified": True},
                        ],
                    ),
                },
                seen,
            ),
        )

        info = await service.get_user_info("github", "code", REDIRECT_URI)

        assert info.email == "ada@example.com"
        assert info.email_verified is True
        assert [r.url.path for r in seen] == ["/login/oauth/access_token", "/user", "/user/emails"]

    @pytest.mark.asyncio
    async def test_unverified_public_email_falls_back_to_primary(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    GITHUB_TOKEN: _token_ok(),
                    GITHUB_USER: httpx.Response(200, json={"id": 7, "email": "claimed@example.com"}),
                    GITHUB_EMAILS: httpx.Response(
                        200,
                        json=[
                            {"email": "claimed@example.com", "primary": False, "verified": False},
                            {"email": "real@example.com", "primary": True, "verified": True},
                        ],
                    ),
                }
            ),
        )

        info = await service.get_user_info("github", "code", REDIRECT_URI)

        assert info.email == "real@example.com"
        assert info.email_verified is True

    @pytest.mark.asyncio
    async def test_public_email_without_emails_scope_is_unverified(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    GITHUB_TOKEN: _token_ok(),
                    GITHUB_USER: httpx.Response(200, json={"id": 7, "email": "ada@example.com"}),
                    GITHUB_EMAILS: httpx.Response(403, json={"message": "Resource not accessible"}),
                }
            ),
        )

        info = await service.get_user_info("github", "code", REDIRECT_URI)

        assert info.email == "ada@example.com"
        assert info.email_verified is False


class TestMicrosoftExchange:
    @pytest.mark.asyncio
    async def test_user_principal_name_fallback(self, settings):
        service = SocialAuthService(
            settings,
            transport=make_transport(
                {
                    MICROSOFT_TOKEN: _token_ok(),
                    MICROSOFT_ME: httpx.Response(
                        200,
                        json={
                            "id": "ms-guid",
                            "mail": None,
                            "userPrincipalName": "carol@contoso.com",
                            "givenName": "Carol",
                            "surname": "Smith",
                        },
                    ),
                }
            ),
        )

        info = await service.get_user_info("microsoft", "code", REDIRECT_URI)

        assert info.email == "carol@contoso.com"
        assert info.first_name == "Carol"
        assert info.last_name == "Smith"
        assert info.profile_picture_url is None
        assert info.email_verified is False


class TestExchangePreconditions:
    """Requests that never reach the provider."""

    @pytest.mark.asyncio
    async def test_unknown_provider(self, settings):
        seen = []
        service = SocialAuthService(settings, transport=make_transport({}, seen))

        assert await service.get_user_info("myspace", "code", REDIRECT_URI) is None
        assert seen == []

    @pytest.mark.asyncio
    async def test_provider_without_credentials(self):
        seen = []
        settings = Settings(SECRET_KEY=TEST_SECRET_KEY, _env_file=None)
        service = SocialAuthService(settings, transport=make_transport({}, seen))

        assert await service.get_user_info("google", "code", REDIRECT_URI) is None
        assert seen == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("redirect_uri", ["", "javascript:alert(1)", "ftp://example.com/cb", "https://"])
    async def test_invalid_redirect_uri(self, settings, redirect_uri):
        seen = []
        service = SocialAuthService(settings, transport=make_transport({}, seen))

        assert await service.get_user_info("google", "code", redirect_uri) is None
        assert seen == []

    @pytest.mark.asyncio
    async def test_missing_code(self, settings):
        service = SocialAuthService(settings, transport=make_transport({}))
        assert await service.get_user_info("google", "", REDIRECT_URI) is None


class TestParseUserinfo:
    """Field-name differences across providers map onto one shape."""

    def test_google(self):
        parsed = parse_userinfo("google", {"sub": "s-1", "email": "a@b.c", "given_name": "A"})
        assert parsed["id"] == "s-1"
        assert parsed["first_name"] == "A"
        assert parsed["last_name"] is None

    def test_github_single_word_name(self):
        parsed = parse_userinfo("github", {"id": 1, "name": "Linus"})
        assert parsed["first_name"] == "Linus"
        assert parsed["last_name"] is None

    def test_github_without_name(self):
        parsed = parse_userinfo("github", {"id": 1, "name": None})
        assert parsed["first_name"] is None

    def test_microsoft_prefers_mail(self):
        parsed = parse_userinfo(
            "microsoft", {"id": "m", "mail": "mail@x.com", "userPrincipalName": "upn@x.com"}
        )
        assert parsed["email"] == "mail@x.com"

    def test_google_openid_email_verified(self):
        assert parse_userinfo("google", {"sub": "s", "email_verified": True})["email_verified"] is True
        assert parse_userinfo("google", {"sub": "s", "email_verified": "true"})["email_verified"] is True
        assert parse_userinfo("google", {"sub": "s"})["email_verified"] is False

    def test_microsoft_email_is_never_verified(self):
        parsed = parse_userinfo("microsoft", {"id": "m", "mail": "mail@x.com"})
        assert parsed["email_verified"] is False
