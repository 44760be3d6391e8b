"""
Unit tests for DID document resolution in social.graze.bookshelf.resolve.did
"""

from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import ClientResponse, ClientSession

from social.graze.bookshelf.errors import PDSNotFound
from social.graze.bookshelf.resolve.did import (
    did_document_url,
    handle_from_doc,
    handle_predicate,
    pds_endpoint_from_doc,
    pds_predicate,
    resolve_did,
    resolve_did_document,
)

DID_DOC = {
    "id": "did:plc:abc123",
    "alsoKnownAs": ["at://alice.example.com"],
    "service": [
        {
            "id": "#atproto_labeler",
            "type": "AtprotoLabeler",
            "serviceEndpoint": "https://labeler.example.com",
        },
        {
            "id": "#atproto_pds",
            "type": "AtprotoPersonalDataServer",
            "serviceEndpoint": "https://pds.example.com/",
        },
    ],
}


class TestPredicates:
    def test_handle_predicate(self):
        assert handle_predicate("at://user.bsky.social") is True
        assert handle_predicate("https://user.bsky.social") is False

    def test_pds_predicate_by_id(self):
        assert pds_predicate(
            {"id": "did:plc:abc#atproto_pds", "type": "Other", "serviceEndpoint": "x"}
        )

    def test_pds_predicate_by_type(self):
        assert pds_predicate(
            {"id": "#pds", "type": "AtprotoPersonalDataServer", "serviceEndpoint": "x"}
        )

    def test_pds_predicate_requires_endpoint(self):
        assert not pds_predicate({"id": "#atproto_pds"})

    def test_pds_predicate_other_service(self):
        assert not pds_predicate(
            {"id": "#atproto_labeler", "type": "AtprotoLabeler", "serviceEndpoint": "x"}
        )


class TestDocumentHelpers:
    def test_pds_endpoint_from_doc(self):
        assert pds_endpoint_from_doc(DID_DOC) == "https://pds.example.com"

    def test_pds_endpoint_missing(self):
        assert pds_endpoint_from_doc({"service": []}) is None
        assert pds_endpoint_from_doc({}) is None

    def test_handle_from_doc(self):
        assert handle_from_doc(DID_DOC) == "alice.example.com"
        assert handle_from_doc({"alsoKnownAs": []}) is None

    def test_plc_url(self):
        assert (
            did_document_url("https://plc.directory/", "did:plc:abc")
            == "https://plc.directory/did:plc:abc"
        )

    def test_web_url(self):
        assert (
            did_document_url("https://plc.directory", "did:web:example.com")
            == "https://example.com/.well-known/did.json"
        )
        assert (
            did_document_url("https://plc.directory", "did:web:example.com:user:alice")
            == "https://example.com/user/alice/did.json"
        )

    def test_unsupported_method(self):
        assert did_document_url("https://plc.directory", "did:key:abc") is None


class TestResolveDid:
    @pytest.mark.asyncio
    async def test_resolve_did_plc(self):
        mock_session = AsyncMock(spec=ClientSession)
        mock_response = AsyncMock(spec=ClientResponse)
        mock_response.status = 200
        mock_response.json.return_value = DID_DOC
        mock_session.get.return_value.__aenter__.return_value = mock_response

        result = await resolve_did(mock_session, "https://plc.directory", "did:plc:abc123")

        assert result.did == "did:plc:abc123"
        assert result.handle == "alice.example.com"
        assert result.pds == "https://pds.example.com"
        mock_session.get.assert_called_once_with("https://plc.directory/did:plc:abc123")

    @pytest.mark.asyncio
    async def test_resolve_did_without_pds(self):
        mock_session = AsyncMock(spec=ClientSession)
        mock_response = AsyncMock(spec=ClientResponse)
        mock_response.status = 200
        mock_response.json.return_value = {"id": "did:plc:abc", "service": []}
        mock_session.get.return_value.__aenter__.return_value = mock_response

        with pytest.raises(PDSNotFound):
            await resolve_did(mock_session, "https://plc.directory", "did:plc:abc")

    @pytest.mark.asyncio
    async def test_resolve_did_document_not_found(self):
        mock_session = AsyncMock(spec=ClientSession)
        mock_response = AsyncMock(spec=ClientResponse)
        mock_response.status = 404
        mock_session.get.return_value.__aenter__.return_value = mock_response

        with pytest.raises(PDSNotFound):
            await resolve_did(mock_session, "https://plc.directory", "did:plc:abc")

    @pytest.mark.asyncio
    @patch("social.graze.bookshelf.resolve.did.sentry_sdk")
    async def test_unexpected_error_reported(self, mock_sentry):
        mock_session = AsyncMock(spec=ClientSession)
        mock_session.get.side_effect = RuntimeError("boom")

        result = await resolve_did_document(
            mock_session, "https://plc.directory", "did:plc:abc"
        )

        assert result is None
        mock_sentry.capture_exception.assert_called_once()
