"""
Scriptable in-process stand-in for the Authority's four endpoints.

Served through ``httpx.MockTransport`` so the real AuthorityClient code
(multipart encoding, cookies, status mapping) runs unchanged in tests.
"""

from urllib.parse import parse_qs

import httpx

from dte_kernel.domain.signer import XmlSigner

SII_NS = "http://www.sii.cl/XMLSchema"


# ---------------------------------------------------------------------------
# Reply builders
# ---------------------------------------------------------------------------


def seed_reply(seed: str = "034567890123", estado: str = "00") -> bytes:
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<SII:RESPUESTA xmlns:SII="{SII_NS}">'
        f"<SII:RESP_BODY><SEMILLA>{seed}</SEMILLA></SII:RESP_BODY>"
        f"<SII:RESP_HDR><ESTADO>{estado}</ESTADO></SII:RESP_HDR>"
        "</SII:RESPUESTA>"
    ).encode()


def token_reply(token: str = "TOKEN-1", estado: str = "00", glosa: str = "Token Creado") -> bytes:
    body = f"<TOKEN>{token}</TOKEN>" if estado == "00" else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<SII:RESPUESTA xmlns:SII="{SII_NS}">'
        f"<SII:RESP_BODY>{body}</SII:RESP_BODY>"
        f"<SII:RESP_HDR><ESTADO>{estado}</ESTADO><GLOSA>{glosa}</GLOSA></SII:RESP_HDR>"
        "</SII:RESPUESTA>"
    ).encode()


def upload_ack(status: str = "0", tracking_id: str | None = "1000") -> bytes:
    track = f"<TRACKID>{tracking_id}</TRACKID>" if status == "0" and tracking_id else ""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<RECEPCIONDTE>"
        "<RUTSENDER>13333333-9</RUTSENDER><RUTCOMPANY>76086428-5</RUTCOMPANY>"
        "<FILE>envio.xml</FILE><TIMESTAMP>2024-01-01 12:00:00</TIMESTAMP>"
        f"<STATUS>{status}</STATUS>{track}"
        "</RECEPCIONDTE>"
    ).encode()


def status_reply(
    tracking_id: str,
    estado: str,
    glosa: str = "",
    informados: int | None = None,
    aceptados: int | None = None,
    rechazados: int | None = None,
    reparos: int | None = None,
    rows: tuple[tuple[int, int, str, str], ...] = (),
) -> bytes:
    """``rows`` are (kind, folio, ESTADO, DESC_ERR) per-document details."""
    counts = "".join(
        f"<{tag}>{value}</{tag}>"
        for tag, value in (
            ("INFORMADOS", informados),
            ("ACEPTADOS", aceptados),
            ("RECHAZADOS", rechazados),
            ("REPAROS", reparos),
        )
        if value is not None
    )
    details = "".join(
        "<SII:DETALLE_REP_RECH>"
        f"<TIPO_DOC>{kind}</TIPO_DOC><FOLIO>{folio}</FOLIO>"
        f"<ESTADO>{row_estado}</ESTADO><DESC_ERR>{error}</DESC_ERR>"
        "</SII:DETALLE_REP_RECH>"
        for kind, folio, row_estado, error in rows
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<SII:RESPUESTA xmlns:SII="{SII_NS}">'
        f"<SII:RESP_HDR><TRACKID>{tracking_id}</TRACKID><ESTADO>{estado}</ESTADO>"
        f"<GLOSA>{glosa}</GLOSA></SII:RESP_HDR>"
        f"<SII:RESP_BODY>{counts}{details}</SII:RESP_BODY>"
        "</SII:RESPUESTA>"
    ).encode()


def acceptance_notice(issuer_rut: str, results: tuple[tuple[int, int, str, str], ...]) -> bytes:
    """``results`` are (kind, folio, EstadoDTE, glosa)."""
    body = "".join(
        "<ResultadoDTE>"
        f"<TipoDTE>{kind}</TipoDTE><Folio>{folio}</Folio>"
        f"<RUTEmisor>{issuer_rut}</RUTEmisor><RUTRecep>11111111-1</RUTRecep>"
        f"<EstadoDTE>{estado}</EstadoDTE><EstadoDTEGlosa>{glosa}</EstadoDTEGlosa>"
        "</ResultadoDTE>"
        for kind, folio, estado, glosa in results
    )
    return (
        '<?xml version="1.0" encoding="ISO-8859-1"?>'
        '<RespuestaDTE xmlns="http://www.sii.cl/SiiDte" version="1.0">'
        f'<Resultado ID="R1">{body}</Resultado>'
        "</RespuestaDTE>"
    ).encode("ISO-8859-1")


def grant_document(
    issuer_rut: str, kind: int, start: int, end: int, authorized_on: str = "2024-01-15"
) -> bytes:
    """A folio authorization file (CAF) as the Authority issues it, key block elided."""
    return (
        '<?xml version="1.0" encoding="ISO-8859-1"?>'
        '<AUTORIZACION><CAF version="1.0"><DA>'
        f"<RE>{issuer_rut}</RE><RS>ACME SPA</RS><TD>{kind}</TD>"
        f"<RNG><D>{start}</D><H>{end}</H></RNG><FA>{authorized_on}</FA>"
        "<IDK>100</IDK>"
        "</DA><FRMA algoritmo=\"SHA1withRSA\">AAAA</FRMA></CAF></AUTORIZACION>"
    ).encode("ISO-8859-1")


# ---------------------------------------------------------------------------
# Fake server
# ---------------------------------------------------------------------------


class FakeAuthority:
    """
    Routes requests by path to scripted replies and records what it saw.

    ``upload_script`` items are consumed one per upload: an upload STATUS
    code ("0", "5", ...), "timeout", or an int HTTP status to return.
    The seed, token and status scripts take "timeout", an int HTTP status,
    or raw reply bytes.
    When the script is empty uploads succeed with a fresh tracking id.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.seed_script: list = []
        self.token_script: list = []
        self.upload_script: list = []
        self.status_script: list = []
        self.status_replies: dict[str, bytes] = {}
        self.uploads: list[bytes] = []
        self.status_queries: list[dict[str, str]] = []
        self.signed_seeds: list[bytes] = []
        self.tokens_issued = 0
        self._next_tracking = 1000

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def count(self, endpoint: str) -> int:
        return sum(1 for r in self.requests if _endpoint(r) == endpoint)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        endpoint = _endpoint(request)
        if endpoint == "seed":
            return self._seed(request)
        if endpoint == "token":
            return self._token(request)
        if endpoint == "upload":
            return self._upload(request)
        if endpoint == "status":
            return self._status(request)
        return httpx.Response(404)

    def _scripted(self, script: list, request: httpx.Request):
        if not script:
            return None
        step = script.pop(0)
        if step == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if isinstance(step, int):
            return httpx.Response(step)
        return step

    def _seed(self, request):
        step = self._scripted(self.seed_script, request)
        if isinstance(step, httpx.Response):
            return step
        return httpx.Response(200, content=step if isinstance(step, bytes) else seed_reply())

    def _token(self, request):
        form = parse_qs(request.content.decode("ascii"), encoding="ISO-8859-1")
        self.signed_seeds.append(form["pszXml"][0].encode("ISO-8859-1"))
        step = self._scripted(self.token_script, request)
        if isinstance(step, httpx.Response):
            return step
        if isinstance(step, bytes):
            return httpx.Response(200, content=step)
        self.tokens_issued += 1
        return httpx.Response(200, content=token_reply(f"TOKEN-{self.tokens_issued}"))

    def _upload(self, request):
        self.uploads.append(request.content)
        step = self._scripted(self.upload_script, request)
        if isinstance(step, httpx.Response):
            return step
        status = step if step is not None else "0"
        tracking_id = None
        if status == "0":
            self._next_tracking += 1
            tracking_id = str(self._next_tracking)
        return httpx.Response(200, content=upload_ack(status, tracking_id))

    def _status(self, request):
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.status_queries.append(form)
        step = self._scripted(self.status_script, request)
        if isinstance(step, httpx.Response):
            return step
        if isinstance(step, bytes):
            return httpx.Response(200, content=step)
        tracking_id = form.get("TRACKID", "")
        reply = self.status_replies.get(tracking_id)
        if reply is None:
            reply = status_reply(tracking_id, "REC", "Envio recibido")
        return httpx.Response(200, content=reply)

    def seed_signatures_valid(self, certificate) -> bool:
        signer = XmlSigner()
        return bool(self.signed_seeds) and all(
            signer.verify(seed, certificate) for seed in self.signed_seeds
        )


def _endpoint(request: httpx.Request) -> str:
    path = request.url.path
    if path.endswith("CAutInicio.cgi"):
        return "seed"
    if path.endswith("CAutAvanzada.cgi"):
        return "token"
    if path.endswith("DTEUpload"):
        return "upload"
    if path.endswith("CJO_QueryEstUp.cgi"):
        return "status"
    return "unknown"
