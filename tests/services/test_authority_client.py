"""Tests for AuthorityClient: request shape and transport failure mapping."""

from urllib.parse import parse_qs

import httpx
import pytest

from dte_kernel.exceptions import AuthorityUnavailableError, MalformedResponseError
from dte_kernel.services.authority_client import AuthorityClient, split_rut
from tests.conftest import ISSUER_RUT, SENDER_RUT


def _client(config, handler):
    return AuthorityClient(config.endpoints, transport=httpx.MockTransport(handler))


class TestRequests:
    def test_seed_is_get(self, authority_client, fake_authority):
        body = authority_client.fetch_seed()
        assert b"<SEMILLA>" in body
        assert fake_authority.requests[0].method == "GET"

    def test_token_posts_seed_xml_as_form_value(self, authority_client, fake_authority):
        authority_client.exchange_token(b"<getToken><item><Semilla>034567890123</Semilla></item></getToken>")
        request = fake_authority.requests[0]
        assert request.method == "POST"
        assert request.headers["Content-Type"] == "application/x-www-form-urlencoded"
        form = parse_qs(request.content.decode())
        assert form["pszXml"] == ["<getToken><item><Semilla>034567890123</Semilla></item></getToken>"]
        assert fake_authority.signed_seeds == [
            b"<getToken><item><Semilla>034567890123</Semilla></item></getToken>"
        ]

    def test_token_form_keeps_seed_bytes(self, authority_client, fake_authority):
        seed = '<?xml version="1.0" encoding="ISO-8859-1"?><getToken>Peñalolén</getToken>'.encode("ISO-8859-1")
        authority_client.exchange_token(seed)
        assert b"Pe%F1alol%E9n" in fake_authority.requests[0].content
        assert fake_authority.signed_seeds == [seed]

    def test_upload_is_multipart_with_token_cookie(self, authority_client, fake_authority):
        authority_client.upload(b"<EnvioDTE/>", "TKN", SENDER_RUT, ISSUER_RUT)
        request = fake_authority.requests[0]
        assert request.headers["Cookie"] == "TOKEN=TKN"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        body = request.content
        assert b'name="archivo"' in body
        assert b"<EnvioDTE/>" in body
        assert b'name="rutSender"\r\n\r\n13333333' in body
        assert b'name="dvCompany"\r\n\r\n5' in body

    def test_status_query_form(self, authority_client, fake_authority):
        authority_client.query_status("4711", ISSUER_RUT, "TKN")
        assert fake_authority.status_queries == [
            {"TRACKID": "4711", "RUT_EMISOR": "76086428", "DV_EMISOR": "5"}
        ]
        assert fake_authority.requests[0].headers["Cookie"] == "TOKEN=TKN"

    def test_user_agent(self, authority_client, fake_authority):
        authority_client.fetch_seed()
        assert fake_authority.requests[0].headers["User-Agent"].startswith("dte-issuance/")


class TestFailures:
    def test_timeout(self, authority_client, fake_authority):
        fake_authority.seed_script.append("timeout")
        with pytest.raises(AuthorityUnavailableError) as exc_info:
            authority_client.fetch_seed()
        assert exc_info.value.endpoint == "seed"
        assert "timeout" in exc_info.value.reason

    def test_connection_refused(self, config):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        with _client(config, refuse) as client:
            with pytest.raises(AuthorityUnavailableError):
                client.fetch_seed()

    @pytest.mark.parametrize("status", [500, 502, 503])
    def test_server_errors_are_unavailability(self, authority_client, fake_authority, status):
        fake_authority.seed_script.append(status)
        with pytest.raises(AuthorityUnavailableError) as exc_info:
            authority_client.fetch_seed()
        assert exc_info.value.status_code == status

    @pytest.mark.parametrize("status", [400, 403, 404])
    def test_client_errors_are_malformed(self, config, status):
        with _client(config, lambda request: httpx.Response(status, content=b"nope")) as client:
            with pytest.raises(MalformedResponseError) as exc_info:
                client.fetch_seed()
        assert exc_info.value.raw == b"nope"

    def test_timeout_logged(self, authority_client, fake_authority, captured_logs):
        fake_authority.seed_script.append("timeout")
        with pytest.raises(AuthorityUnavailableError):
            authority_client.fetch_seed()
        assert any(r["message"] == "authority_timeout" for r in captured_logs())


class TestSplitRut:
    def test_split(self):
        assert split_rut("76.086.428-5") == ("76086428", "5")
        assert split_rut("60803000-k") == ("60803000", "K")
