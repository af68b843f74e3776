"""
XmlSigner -- enveloped XML-DSig signatures over canonical documents.

Responsibility:
    Signs canonical DTE envelopes, batch cover sheets and the session seed
    envelope with the account's RSA key, embedding the signer's public key
    and certificate so a verifier needs no out-of-band lookup.  Verifies
    such signatures for credential self-tests and Authority countersigned
    responses.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  lxml for C14N 1.0, cryptography for
    RSA PKCS#1 v1.5.

Invariants enforced:
    - Digest is taken over the inclusive C14N (no comments) of the referenced
      element in its document context; SignedInfo is canonicalized the same
      way after it is placed in the tree.
    - Certificate validity is checked against the document's issue date,
      never wall-clock time.
    - verify() never raises on bad input: any tampering, malformed XML or
      certificate mismatch yields False.

Failure modes:
    - KeyMaterialExpiredError (issue date outside certificate validity).
    - SignatureFailureError (crypto backend refused to sign).
"""

from __future__ import annotations

import base64
import binascii
import hmac
from typing import Callable

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from lxml import etree

from dte_kernel.domain.credentials import KeyMaterial
from dte_kernel.domain.policies import DIGEST_ALGORITHMS, SIGNATURE_ALGORITHMS, SigningConfig
from dte_kernel.domain.values import DocumentEnvelope
from dte_kernel.exceptions import SignatureFailureError
from dte_kernel.logging_config import get_logger

logger = get_logger("domain.signer")

DSIG_NS = "http://www.w3.org/2000/09/xmldsig#"
C14N_URI = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
ENVELOPED_URI = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

_HASHES: dict[str, Callable[[], hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "rsa-sha1": hashes.SHA1,
    "rsa-sha256": hashes.SHA256,
}
_SIGNATURE_BY_URI = {uri: name for name, uri in SIGNATURE_ALGORITHMS.items()}
_DIGEST_BY_URI = {uri: name for name, uri in DIGEST_ALGORITHMS.items()}

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=False)


def _c14n(element: etree._Element) -> bytes:
    return etree.tostring(element, method="c14n", exclusive=False, with_comments=False)


def _digest(data: bytes, algorithm: str) -> bytes:
    h = hashes.Hash(_HASHES[algorithm]())
    h.update(data)
    return h.finalize()


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode_strict(text: str | None) -> bytes:
    """Decode base64, rejecting non-alphabet characters and non-canonical padding bits."""
    if text is None:
        raise ValueError("missing base64 value")
    compact = "".join(text.split())
    decoded = base64.b64decode(compact, validate=True)
    if _b64(decoded) != compact:
        raise ValueError("non-canonical base64")
    return decoded


def _int_to_b64(value: int) -> str:
    return _b64(value.to_bytes((value.bit_length() + 7) // 8, "big"))


def _ds(tag: str) -> str:
    return f"{{{DSIG_NS}}}{tag}"


class XmlSigner:
    """
    Enveloped-signature signer and verifier.

    Contract:
        Configuration (algorithms, output encoding) is fixed at construction;
        key material is passed per call.

    Usage:
        signer = XmlSigner(SigningConfig())
        signed = signer.sign(envelope, credentials.get(account_id))
        assert signer.verify(signed.signed_xml, material.certificate)
    """

    def __init__(self, config: SigningConfig | None = None):
        self._config = config or SigningConfig()

    @property
    def config(self) -> SigningConfig:
        return self._config

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign(self, envelope: DocumentEnvelope, key_material: KeyMaterial) -> DocumentEnvelope:
        """
        Sign the envelope's ``Documento`` element.

        Raises:
            KeyMaterialExpiredError, SignatureFailureError
        """
        key_material.check_valid_on(envelope.issue_date)
        signed_xml = self.sign_xml(
            envelope.canonical_xml, key_material, reference_id=envelope.document_id
        )
        logger.info(
            "document_signed",
            extra={
                "document_id": envelope.document_id,
                "document_kind": envelope.document_kind,
                "folio": envelope.folio,
                "signature_algorithm": self._config.signature_algorithm,
            },
        )
        return envelope.with_signature(signed_xml)

    def sign_seed(self, seed: str, key_material: KeyMaterial) -> bytes:
        """Wrap the Authority's seed in ``getToken/item/Semilla`` and sign it."""
        root = etree.Element("getToken")
        item = etree.SubElement(root, "item")
        etree.SubElement(item, "Semilla").text = seed
        payload = etree.tostring(root, encoding=self._config.encoding, xml_declaration=True)
        return self.sign_xml(payload, key_material)

    def sign_xml(
        self,
        xml: bytes,
        key_material: KeyMaterial,
        reference_id: str | None = None,
    ) -> bytes:
        """
        Append an enveloped ``Signature`` to the document root.

        Args:
            reference_id: ID attribute of the element to sign; None signs
                the whole document (URI="").

        Raises:
            SignatureFailureError
        """
        try:
            root = etree.fromstring(xml, parser=_PARSER)
        except etree.XMLSyntaxError as exc:
            raise SignatureFailureError(f"payload is not well-formed XML: {exc}") from exc

        if reference_id is None:
            target = root
            uri = ""
        else:
            matches = root.xpath("//*[@ID=$ref]", ref=reference_id)
            if len(matches) != 1:
                raise SignatureFailureError(f"reference {reference_id!r} not found exactly once")
            target = matches[0]
            uri = f"#{reference_id}"

        digest_value = _digest(_c14n(target), self._config.digest_algorithm)

        signature = etree.SubElement(root, _ds("Signature"), nsmap={None: DSIG_NS})
        signed_info = etree.SubElement(signature, _ds("SignedInfo"))
        etree.SubElement(signed_info, _ds("CanonicalizationMethod")).set("Algorithm", C14N_URI)
        etree.SubElement(signed_info, _ds("SignatureMethod")).set(
            "Algorithm", self._config.signature_uri
        )
        reference = etree.SubElement(signed_info, _ds("Reference"))
        reference.set("URI", uri)
        if uri == "":
            transforms = etree.SubElement(reference, _ds("Transforms"))
            etree.SubElement(transforms, _ds("Transform")).set("Algorithm", ENVELOPED_URI)
        etree.SubElement(reference, _ds("DigestMethod")).set("Algorithm", self._config.digest_uri)
        etree.SubElement(reference, _ds("DigestValue")).text = _b64(digest_value)

        signature_value = etree.SubElement(signature, _ds("SignatureValue"))

        public_numbers = key_material.private_key.public_key().public_numbers()
        key_info = etree.SubElement(signature, _ds("KeyInfo"))
        rsa_key_value = etree.SubElement(
            etree.SubElement(key_info, _ds("KeyValue")), _ds("RSAKeyValue")
        )
        etree.SubElement(rsa_key_value, _ds("Modulus")).text = _int_to_b64(public_numbers.n)
        etree.SubElement(rsa_key_value, _ds("Exponent")).text = _int_to_b64(public_numbers.e)
        x509_data = etree.SubElement(key_info, _ds("X509Data"))
        etree.SubElement(x509_data, _ds("X509Certificate")).text = key_material.certificate_b64

        try:
            raw_signature = key_material.private_key.sign(
                _c14n(signed_info),
                padding.PKCS1v15(),
                _HASHES[self._config.signature_algorithm](),
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise SignatureFailureError(str(exc)) from exc
        signature_value.text = _b64(raw_signature)

        return etree.tostring(root, encoding=self._config.encoding, xml_declaration=True)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(
        self,
        signed_xml: bytes,
        certificate: x509.Certificate | bytes | None = None,
    ) -> bool:
        """
        Check every top-level signature of ``signed_xml``.

        When ``certificate`` (object, PEM or DER) is given, the embedded
        certificate must be byte-identical to it.
        """
        try:
            trusted_der = _certificate_der(certificate) if certificate is not None else None
            root = etree.fromstring(signed_xml, parser=_PARSER)
            signatures = root.findall(_ds("Signature"))
            if not signatures:
                return False
            return all(
                self._verify_one(root, index, trusted_der)
                for index in range(len(signatures))
            )
        except (
            etree.XMLSyntaxError,
            ValueError,
            TypeError,
            KeyError,
            IndexError,
            AttributeError,
            binascii.Error,
            UnsupportedAlgorithm,
        ) as exc:
            logger.debug("signature_unverifiable", extra={"reason": str(exc)})
            return False

    def _verify_one(self, root: etree._Element, index: int, trusted_der: bytes | None) -> bool:
        signature = root.findall(_ds("Signature"))[index]
        signed_info = signature.find(_ds("SignedInfo"))
        reference = signed_info.find(_ds("Reference"))

        c14n_method = signed_info.find(_ds("CanonicalizationMethod")).get("Algorithm")
        if c14n_method != C14N_URI:
            return False
        signature_alg = _SIGNATURE_BY_URI[signed_info.find(_ds("SignatureMethod")).get("Algorithm")]
        digest_alg = _DIGEST_BY_URI[reference.find(_ds("DigestMethod")).get("Algorithm")]
        expected_digest = _b64decode_strict(reference.find(_ds("DigestValue")).text)
        signature_bytes = _b64decode_strict(signature.find(_ds("SignatureValue")).text)

        cert_text = signature.find(f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}").text
        cert_der = _b64decode_strict(cert_text)
        if trusted_der is not None and not hmac.compare_digest(cert_der, trusted_der):
            return False
        public_key = x509.load_der_x509_certificate(cert_der).public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            return False

        key_value = signature.find(f"{_ds('KeyInfo')}/{_ds('KeyValue')}/{_ds('RSAKeyValue')}")
        if key_value is not None:
            modulus = int.from_bytes(_b64decode_strict(key_value.find(_ds("Modulus")).text), "big")
            exponent = int.from_bytes(_b64decode_strict(key_value.find(_ds("Exponent")).text), "big")
            numbers = public_key.public_numbers()
            if (modulus, exponent) != (numbers.n, numbers.e):
                return False

        # Digest: drop this signature from a copy, then locate the reference
        uri = reference.get("URI")
        working = etree.fromstring(etree.tostring(root), parser=_PARSER)
        working.remove(working.findall(_ds("Signature"))[index])
        if uri == "":
            target = working
        elif uri.startswith("#"):
            matches = working.xpath("//*[@ID=$ref]", ref=uri[1:])
            if len(matches) != 1:
                return False
            target = matches[0]
        else:
            return False

        actual_digest = _digest(_c14n(target), digest_alg)
        if not hmac.compare_digest(actual_digest, expected_digest):
            return False

        try:
            public_key.verify(
                signature_bytes,
                _c14n(signed_info),
                padding.PKCS1v15(),
                _HASHES[signature_alg](),
            )
        except InvalidSignature:
            return False
        return True


def _certificate_der(certificate: x509.Certificate | bytes) -> bytes:
    if isinstance(certificate, x509.Certificate):
        return certificate.public_bytes(serialization.Encoding.DER)
    if certificate.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(certificate).public_bytes(serialization.Encoding.DER)
    return certificate
