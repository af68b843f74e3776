"""
Folio grant parsing.

The Authority grants numbering capacity as an XML authorization file
(``AUTORIZACION/CAF/DA``) naming the issuer RUT (RE), document kind (TD),
folio range (RNG/D..H) and authorization date (FA).  This module reads
those fields so a range ingestion can be checked against its proof.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from lxml import etree

from dte_kernel.domain.values import normalize_rut
from dte_kernel.exceptions import InvalidGrantError, InvalidRutError

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True)


@dataclass(frozen=True, slots=True)
class FolioGrant:
    issuer_rut: str
    legal_name: str
    document_kind: int
    range_start: int
    range_end: int
    authorized_on: date | None


def _field(root: etree._Element, path: str) -> str:
    nodes = root.xpath(path)
    if not nodes or not (nodes[0].text or "").strip():
        raise InvalidGrantError(f"missing {path}")
    return nodes[0].text.strip()


def parse_grant(grant_xml: str | bytes) -> FolioGrant:
    """
    Raises:
        InvalidGrantError: If the document is not a readable grant.
    """
    if isinstance(grant_xml, str):
        grant_xml = grant_xml.encode("ISO-8859-1", errors="xmlcharrefreplace")
    try:
        root = etree.fromstring(grant_xml, parser=_PARSER)
    except etree.XMLSyntaxError as exc:
        raise InvalidGrantError(f"not well-formed XML: {exc}") from exc

    da = root.xpath("//*[local-name()='CAF']/*[local-name()='DA']")
    if not da:
        raise InvalidGrantError("no CAF/DA block")
    block = da[0]

    try:
        issuer_rut = normalize_rut(_field(block, "*[local-name()='RE']"))
        document_kind = int(_field(block, "*[local-name()='TD']"))
        range_start = int(_field(block, "*[local-name()='RNG']/*[local-name()='D']"))
        range_end = int(_field(block, "*[local-name()='RNG']/*[local-name()='H']"))
    except InvalidRutError as exc:
        raise InvalidGrantError(f"bad issuer RUT {exc.rut!r}") from exc
    except ValueError as exc:
        raise InvalidGrantError(str(exc)) from exc

    legal_name_nodes = block.xpath("*[local-name()='RS']")
    legal_name = (legal_name_nodes[0].text or "").strip() if legal_name_nodes else ""

    authorized_on = None
    fa_nodes = block.xpath("*[local-name()='FA']")
    if fa_nodes and fa_nodes[0].text:
        try:
            authorized_on = date.fromisoformat(fa_nodes[0].text.strip())
        except ValueError as exc:
            raise InvalidGrantError(f"bad authorization date: {exc}") from exc

    return FolioGrant(
        issuer_rut=issuer_rut,
        legal_name=legal_name,
        document_kind=document_kind,
        range_start=range_start,
        range_end=range_end,
        authorized_on=authorized_on,
    )
