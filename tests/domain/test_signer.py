"""Tests for XmlSigner: enveloped signatures, verification and tamper detection."""

from datetime import date, datetime, timezone

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from lxml import etree

from dte_kernel.domain.signer import DSIG_NS, XmlSigner
from dte_kernel.domain.policies import SigningConfig
from dte_kernel.exceptions import KeyMaterialExpiredError, SignatureFailureError
from tests.conftest import ACCOUNT_ID, make_key_material

SII = "http://www.sii.cl/SiiDte"


@pytest.fixture
def envelope(canonicalizer, line_items, issuer, buyer):
    return canonicalizer.canonicalize(
        ACCOUNT_ID, 33, line_items, issuer, buyer, 100, date(2024, 3, 1)
    )


@pytest.fixture
def signed(signer, envelope, key_material):
    return signer.sign(envelope, key_material)


class TestSign:
    def test_returns_new_signed_envelope(self, envelope, signed):
        assert not envelope.is_signed
        assert signed.is_signed
        assert signed.canonical_xml == envelope.canonical_xml

    def test_signature_structure(self, signed):
        root = etree.fromstring(signed.signed_xml)
        signatures = root.findall(f"{{{DSIG_NS}}}Signature")
        assert len(signatures) == 1
        reference = signatures[0].find(f".//{{{DSIG_NS}}}Reference")
        assert reference.get("URI") == "#F100T33"
        method = signatures[0].find(f".//{{{DSIG_NS}}}SignatureMethod").get("Algorithm")
        assert method == "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
        assert signatures[0].find(f".//{{{DSIG_NS}}}X509Certificate").text

    def test_signed_document_keeps_content(self, signed):
        root = etree.fromstring(signed.signed_xml)
        assert root.find(f"{{{SII}}}Documento").get("ID") == "F100T33"

    def test_sha256_profile(self, envelope, key_material):
        signer = XmlSigner(SigningConfig(signature_algorithm="rsa-sha256", digest_algorithm="sha256"))
        signed = signer.sign(envelope, key_material)
        assert signer.verify(signed.signed_xml, key_material.certificate)

    def test_unsupported_algorithm_rejected(self):
        with pytest.raises(ValueError):
            SigningConfig(signature_algorithm="dsa-sha1")

    def test_expired_certificate(self, signer, envelope):
        expired = make_key_material(
            not_before=datetime(2020, 1, 1, tzinfo=timezone.utc),
            not_after=datetime(2023, 1, 1, tzinfo=timezone.utc),
        )
        with pytest.raises(KeyMaterialExpiredError) as exc_info:
            signer.sign(envelope, expired)
        assert exc_info.value.checked_on == date(2024, 3, 1)

    def test_validity_checked_against_issue_date(self, signer, envelope, key_material):
        # Certificate valid 2023-2026; the wall clock plays no part
        assert key_material.is_valid_on(envelope.issue_date)
        assert not key_material.is_valid_on(date(2027, 1, 1))

    def test_unknown_reference(self, signer, key_material):
        with pytest.raises(SignatureFailureError):
            signer.sign_xml(b"<a ID='x'/>", key_material, reference_id="y")

    def test_malformed_payload(self, signer, key_material):
        with pytest.raises(SignatureFailureError):
            signer.sign_xml(b"<a>", key_material)

    def test_signing_logged(self, signer, envelope, key_material, captured_logs):
        signer.sign(envelope, key_material)
        record = next(r for r in captured_logs() if r["message"] == "document_signed")
        assert record["document_id"] == "F100T33"
        assert record["folio"] == 100


class TestVerify:
    def test_round_trip(self, signer, signed, key_material):
        assert signer.verify(signed.signed_xml)
        assert signer.verify(signed.signed_xml, key_material.certificate)

    def test_trusted_certificate_as_pem(self, signer, signed, key_pem):
        certificate_pem, _ = key_pem
        assert signer.verify(signed.signed_xml, certificate_pem)

    def test_other_certificate_rejected(self, signer, signed):
        other = make_key_material()
        assert not signer.verify(signed.signed_xml, other.certificate)

    def test_unsigned_document(self, signer, envelope):
        assert not signer.verify(envelope.canonical_xml)

    def test_garbage(self, signer):
        assert not signer.verify(b"not xml at all")

    def test_altered_total(self, signer, signed):
        tampered = signed.signed_xml.replace(b"<MntTotal>16900<", b"<MntTotal>16901<")
        assert tampered != signed.signed_xml
        assert not signer.verify(tampered)

    def test_added_attribute(self, signer, signed):
        tampered = signed.signed_xml.replace(b"<MntTotal>", b'<MntTotal moneda="USD">', 1)
        assert tampered != signed.signed_xml
        assert not signer.verify(tampered)

    def test_whitespace_inside_tag_still_verifies(self, signer, signed, key_material):
        reformatted = signed.signed_xml.replace(b"<MntTotal>", b"<MntTotal  >", 1)
        assert reformatted != signed.signed_xml
        assert signer.verify(reformatted, key_material.certificate)

    def test_altered_signature_value(self, signer, signed):
        root = etree.fromstring(signed.signed_xml)
        value = root.find(f".//{{{DSIG_NS}}}SignatureValue")
        value.text = ("A" if value.text[0] != "A" else "B") + value.text[1:]
        assert not signer.verify(etree.tostring(root))

    def test_seed_signature(self, signer, key_material):
        signed_seed = signer.sign_seed("034567890123", key_material)
        root = etree.fromstring(signed_seed)
        assert root.tag == "getToken"
        assert root.findtext("item/Semilla") == "034567890123"
        assert signer.verify(signed_seed, key_material.certificate)


def _text_nodes(signed_xml: bytes) -> list[str]:
    root = etree.fromstring(signed_xml)
    document = root.find(f"{{{SII}}}Documento")
    return [
        el.getroottree().getpath(el)
        for el in document.iter()
        if el.text and any(ch.isalnum() for ch in el.text)
    ]


class TestTamperProperty:
    @settings(
        max_examples=40,
        deadline=None,
        suppress_health_check=[HealthCheck.function_scoped_fixture],
    )
    @given(data=st.data())
    def test_any_content_change_breaks_signature(self, signer, signed, data):
        paths = _text_nodes(signed.signed_xml)
        path = data.draw(st.sampled_from(paths))

        root = etree.fromstring(signed.signed_xml)
        element = root.xpath(path)[0]
        text = element.text
        positions = [i for i, ch in enumerate(text) if ch.isalnum()]
        position = data.draw(st.sampled_from(positions))
        replacement = data.draw(
            st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789").filter(
                lambda ch: ch != text[position]
            )
        )
        element.text = text[:position] + replacement + text[position + 1:]

        tampered = etree.tostring(root, encoding="ISO-8859-1", xml_declaration=True)
        assert not signer.verify(tampered)
