"""
AuthorityClient -- HTTP wire layer to the tax authority.

Responsibility:
    Issues the four Authority requests (seed, token, upload, status query)
    and returns the raw response bodies.  Maps transport failures onto the
    kernel's exception hierarchy; interprets nothing beyond HTTP status.

Architecture position:
    Kernel > Services -- the only module that opens network connections.
    Used by SessionNegotiator, Transmitter and StatusReconciler.

Failure modes:
    - AuthorityUnavailableError: timeout, connection failure, or HTTP 5xx.
      Retryable; the caller decides how often.
    - MalformedResponseError: any other non-2xx response (raw body kept).
"""

from __future__ import annotations

from urllib.parse import urlencode

import httpx

from dte_kernel.domain.policies import EndpointSet
from dte_kernel.domain.values import normalize_rut
from dte_kernel.exceptions import AuthorityUnavailableError, MalformedResponseError
from dte_kernel.logging_config import get_logger

logger = get_logger("services.authority_client")

USER_AGENT = "dte-issuance/0.1"


def split_rut(rut: str) -> tuple[str, str]:
    """'76086428-5' -> ('76086428', '5')."""
    body, _, check = normalize_rut(rut).partition("-")
    return body, check


class AuthorityClient:
    """
    Synchronous httpx client for the Authority endpoints.

    Contract:
        One instance is shared by every thread of the process; httpx.Client
        is thread-safe for concurrent requests.  The session token travels
        as the ``TOKEN`` cookie on upload and status requests.

    Usage:
        client = AuthorityClient(config.endpoints, timeout=30.0)
        seed_xml = client.fetch_seed()
    """

    def __init__(
        self,
        endpoints: EndpointSet,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._endpoints = endpoints
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )

    @property
    def endpoints(self) -> EndpointSet:
        return self._endpoints

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> AuthorityClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _send(self, endpoint: str, method: str, url: str, **kwargs) -> bytes:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("authority_timeout", extra={"endpoint": endpoint, "url": url})
            raise AuthorityUnavailableError(endpoint, f"timeout: {exc}") from exc
        except httpx.TransportError as exc:
            logger.warning(
                "authority_unreachable",
                extra={"endpoint": endpoint, "url": url, "error": str(exc)},
            )
            raise AuthorityUnavailableError(endpoint, str(exc)) from exc

        logger.debug(
            "authority_response",
            extra={
                "endpoint": endpoint,
                "status_code": response.status_code,
                "bytes": len(response.content),
            },
        )
        if response.status_code >= 500:
            raise AuthorityUnavailableError(
                endpoint, f"HTTP {response.status_code}", status_code=response.status_code
            )
        if not response.is_success:
            raise MalformedResponseError(
                endpoint, f"HTTP {response.status_code}", raw=response.content
            )
        return response.content

    @staticmethod
    def _token_header(token: str) -> dict[str, str]:
        return {"Cookie": f"TOKEN={token}"}

    def fetch_seed(self) -> bytes:
        """GET the seed document."""
        return self._send("seed", "GET", self._endpoints.seed_url)

    def exchange_token(self, signed_seed_xml: bytes) -> bytes:
        """
        POST the signed seed; the reply carries the session token.

        The XML document itself is the ``pszXml`` form value.  The bytes are
        percent-encoded as they are, so the signed content reaches the
        Authority unchanged whatever its declared encoding.
        """
        return self._send(
            "token",
            "POST",
            self._endpoints.token_url,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            content=urlencode({"pszXml": signed_seed_xml}).encode("ascii"),
        )

    def upload(
        self,
        envelope_xml: bytes,
        token: str,
        sender_rut: str,
        company_rut: str,
        filename: str = "envio.xml",
    ) -> bytes:
        """Multipart upload of a signed EnvioDTE; returns the upload acknowledgement."""
        sender_body, sender_dv = split_rut(sender_rut)
        company_body, company_dv = split_rut(company_rut)
        return self._send(
            "upload",
            "POST",
            self._endpoints.upload_url,
            headers=self._token_header(token),
            data={
                "rutSender": sender_body,
                "dvSender": sender_dv,
                "rutCompany": company_body,
                "dvCompany": company_dv,
            },
            files={"archivo": (filename, envelope_xml, "text/xml")},
        )

    def query_status(self, tracking_id: str, company_rut: str, token: str) -> bytes:
        """Query the processing status of an upload by tracking id."""
        company_body, company_dv = split_rut(company_rut)
        return self._send(
            "status",
            "POST",
            self._endpoints.status_url,
            headers=self._token_header(token),
            data={
                "TRACKID": tracking_id,
                "RUT_EMISOR": company_body,
                "DV_EMISOR": company_dv,
            },
        )
