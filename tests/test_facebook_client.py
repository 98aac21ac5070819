"""Tests for the Facebook Pages client."""

from datetime import datetime, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from review_sync.clients.facebook_pages import (
    FacebookPagesClient,
    derive_review_id,
    parse_facebook_timestamp,
    recommendation_to_rating,
)
from review_sync.exceptions import AuthRejectedError, IntegrationError, TokenExpiredError
from review_sync.models import CredentialStatus, PlatformType
from review_sync.services.token_cipher import get_token_cipher

from tests.fakes import mock_http_client


@pytest.fixture
def page_metadata():
    return {
        "page_id": "5550001",
        "page_name": "Corner Cafe",
        "page_url": "https://facebook.com/5550001",
        "encrypted_page_access_token": get_token_cipher().encrypt("page-token"),
    }


class TestDerivedIds:
    """Deterministic ids for ratings without an open graph story."""

    def test_same_text_and_timestamp_gives_same_id(self):
        first = derive_review_id("Lovely coffee", "2024-03-01T10:00:00+0000")
        second = derive_review_id("Lovely coffee", "2024-03-01T10:00:00+0000")

        assert first == second
        assert first.startswith("fb_")
        assert len(first) == len("fb_") + 16

    def test_different_timestamp_gives_different_id(self):
        assert derive_review_id("Lovely coffee", "2024-03-01T10:00:00+0000") != derive_review_id(
            "Lovely coffee", "2024-03-02T10:00:00+0000"
        )

    def test_missing_text_still_derives(self):
        assert derive_review_id(None, "2024-03-01T10:00:00+0000") == derive_review_id("", "2024-03-01T10:00:00+0000")


class TestRatings:
    """Recommendation and star mapping."""

    @pytest.mark.parametrize(
        "item,expected",
        [
            ({"recommendation_type": "positive"}, 5),
            ({"recommendation_type": "negative"}, 1),
            ({"rating": 4, "recommendation_type": "positive"}, 4),
            ({"rating": 9, "recommendation_type": "negative"}, 1),
            ({}, 0),
        ],
    )
    def test_rating_mapping(self, item, expected):
        assert recommendation_to_rating(item) == expected

    def test_graph_timestamp_parsed_to_naive_utc(self):
        assert parse_facebook_timestamp("2024-03-01T17:02:11+0000") == datetime(2024, 3, 1, 17, 2, 11)
        assert parse_facebook_timestamp(0) == datetime(1970, 1, 1)
        assert parse_facebook_timestamp("not a date") is None


class TestExchange:
    """Short-lived -> long-lived token, then page discovery."""

    def test_authorization_url_scopes(self, settings):
        url = FacebookPagesClient(settings).get_authorization_url("abc")
        params = parse_qs(urlparse(url).query)

        assert urlparse(url).path == "/v18.0/dialog/oauth"
        assert params["scope"] == ["pages_show_list,pages_read_engagement,pages_manage_metadata"]
        assert params["state"] == ["abc"]

    @pytest.mark.asyncio
    async def test_exchange_extends_token_and_stores_encrypted_page_token(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if request.url.path.endswith("/oauth/access_token"):
                if request.url.params.get("grant_type") == "fb_exchange_token":
                    assert request.url.params["fb_exchange_token"] == "short-token"
                    return httpx.Response(200, json={"access_token": "long-token", "expires_in": 5183944})
                return httpx.Response(200, json={"access_token": "short-token", "expires_in": 3600})
            return httpx.Response(200, json={"data": [
                {"id": "5550001", "name": "Corner Cafe", "access_token": "page-token"},
                {"id": "5550002", "name": "Second Page", "access_token": "other"},
            ]})

        token = await FacebookPagesClient(settings, mock_http_client(handler)).exchange_code_for_token("code")

        assert calls == ["/v18.0/oauth/access_token", "/v18.0/oauth/access_token", "/v18.0/me/accounts"]
        assert token.access_token == "long-token"
        assert token.refresh_token is None
        assert token.expires_in == 5183944
        assert token.metadata["page_id"] == "5550001"
        assert token.metadata["encrypted_page_access_token"] != "page-token"
        assert get_token_cipher().decrypt(token.metadata["encrypted_page_access_token"]) == "page-token"

    @pytest.mark.asyncio
    async def test_no_pages_raises_integration_error(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/me/accounts"):
                return httpx.Response(200, json={"data": []})
            return httpx.Response(200, json={"access_token": "token"})

        with pytest.raises(IntegrationError, match="No Facebook pages"):
            await FacebookPagesClient(settings, mock_http_client(handler)).exchange_code_for_token("code")


class TestRefresh:
    """Extension stands in for refresh."""

    @pytest.mark.asyncio
    async def test_extension_replaces_token_and_expiry(self, settings, make_credential, page_metadata):
        credential = make_credential(
            platform=PlatformType.FACEBOOK, refresh_token=None, expires_in=timedelta(days=2), metadata=page_metadata
        )

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["fb_exchange_token"] == "access-token"
            return httpx.Response(200, json={"access_token": "extended", "expires_in": 5184000})

        await FacebookPagesClient(settings, mock_http_client(handler)).refresh_token(credential)

        assert credential.access_token == "extended"
        assert credential.token_expires_at > datetime.utcnow() + timedelta(days=59)
        assert credential.status == CredentialStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_oauth_exception_190_marks_expired(self, settings, make_credential, page_metadata):
        credential = make_credential(platform=PlatformType.FACEBOOK, refresh_token=None, metadata=page_metadata)
        handler = lambda request: httpx.Response(
            400, json={"error": {"message": "Session has expired", "type": "OAuthException", "code": 190}}
        )

        with pytest.raises(TokenExpiredError):
            await FacebookPagesClient(settings, mock_http_client(handler)).refresh_token(credential)

        assert credential.status == CredentialStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, settings, make_credential, page_metadata):
        credential = make_credential(platform=PlatformType.FACEBOOK, refresh_token=None, metadata=page_metadata)
        handler = lambda request: httpx.Response(400, json={"error": {"message": "Too many calls", "code": 4}})

        with pytest.raises(IntegrationError):
            await FacebookPagesClient(settings, mock_http_client(handler)).refresh_token(credential)

        assert credential.status == CredentialStatus.ACTIVE.value


class TestFetchReviews:
    """Ratings read with the page token."""

    @pytest.mark.asyncio
    async def test_missing_page_token_fails_before_calling(self, settings, make_credential):
        credential = make_credential(platform=PlatformType.FACEBOOK, metadata={"page_id": "5550001"})

        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(IntegrationError, match="reconnect"):
            await FacebookPagesClient(settings, mock_http_client(handler)).fetch_reviews(credential, None)

    @pytest.mark.asyncio
    async def test_paginates_and_maps_ratings(self, settings, make_credential, page_metadata):
        credential = make_credential(platform=PlatformType.FACEBOOK, metadata=page_metadata)
        next_url = "https://graph.facebook.com/v18.0/5550001/ratings?after=cursor2&access_token=page-token"

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["access_token"] == "page-token"
            if request.url.params.get("after") == "cursor2":
                return httpx.Response(200, json={"data": [{
                    "created_time": "2024-03-01T09:00:00+0000",
                    "recommendation_type": "negative",
                    "review_text": "Cold food",
                    "reviewer": {"name": "Ann"},
                }]})
            return httpx.Response(200, json={
                "data": [{
                    "created_time": "2024-03-02T09:00:00+0000",
                    "recommendation_type": "positive",
                    "review_text": "Lovely",
                    "open_graph_story": {"id": "story-1"},
                }],
                "paging": {"next": next_url},
            })

        payloads = await FacebookPagesClient(settings, mock_http_client(handler)).fetch_reviews(credential, None)

        assert [p.rating for p in payloads] == [1, 5]
        assert payloads[0].platform_review_id == derive_review_id("Cold food", "2024-03-01T09:00:00+0000")
        assert payloads[0].reviewer_name == "Ann"
        assert payloads[1].platform_review_id == "story-1"

    @pytest.mark.asyncio
    async def test_derived_id_stable_across_fetches(self, settings, make_credential, page_metadata):
        credential = make_credential(platform=PlatformType.FACEBOOK, metadata=page_metadata)
        handler = lambda request: httpx.Response(200, json={"data": [{
            "created_time": "2024-03-01T09:00:00+0000",
            "recommendation_type": "positive",
            "review_text": "Same every time",
        }]})
        client = FacebookPagesClient(settings, mock_http_client(handler))

        first = await client.fetch_reviews(credential, None)
        second = await client.fetch_reviews(credential, None)

        assert first[0].platform_review_id == second[0].platform_review_id

    @pytest.mark.asyncio
    async def test_watermark_drops_older_ratings(self, settings, make_credential, page_metadata):
        credential = make_credential(platform=PlatformType.FACEBOOK, metadata=page_metadata)
        handler = lambda request: httpx.Response(200, json={"data": [
            {"created_time": "2024-03-05T00:00:00+0000", "recommendation_type": "positive", "review_text": "new"},
            {"created_time": "2024-02-01T00:00:00+0000", "recommendation_type": "positive", "review_text": "old"},
        ]})

        payloads = await FacebookPagesClient(settings, mock_http_client(handler)).fetch_reviews(
            credential, datetime(2024, 3, 1)
        )

        assert [p.comment for p in payloads] == ["new"]

    @pytest.mark.asyncio
    async def test_rejected_page_token_raises_auth_rejected(self, settings, make_credential, page_metadata):
        credential = make_credential(platform=PlatformType.FACEBOOK, metadata=page_metadata)
        handler = lambda request: httpx.Response(400, json={"error": {"message": "Invalid token", "code": 190}})

        with pytest.raises(AuthRejectedError) as exc_info:
            await FacebookPagesClient(settings, mock_http_client(handler)).fetch_reviews(credential, None)

        assert exc_info.value.refreshable is False


class TestWriteBackAndValidate:
    """Unsupported reply and the health check."""

    @pytest.mark.asyncio
    async def test_reply_not_configured(self, settings, make_credential, page_metadata):
        credential = make_credential(platform=PlatformType.FACEBOOK, metadata=page_metadata)

        with pytest.raises(IntegrationError, match="not yet configured"):
            await FacebookPagesClient(settings).post_review_response(credential, "story-1", "Thanks")

    @pytest.mark.asyncio
    async def test_validate_false_without_page(self, settings, make_credential):
        credential = make_credential(platform=PlatformType.FACEBOOK)

        assert await FacebookPagesClient(settings).validate_credentials(credential) is False

    @pytest.mark.asyncio
    async def test_validate_true_when_page_readable(self, settings, make_credential, page_metadata):
        credential = make_credential(platform=PlatformType.FACEBOOK, metadata=page_metadata)
        handler = lambda request: httpx.Response(200, json={"id": "5550001", "name": "Corner Cafe"})

        assert await FacebookPagesClient(settings, mock_http_client(handler)).validate_credentials(credential) is True
