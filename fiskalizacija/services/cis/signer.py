# fiskalizacija/services/cis/signer.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import hashlib
import logging
from typing import List

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from lxml import etree

from fiskalizacija.services.cis.certificates import FiscalCertificate
from fiskalizacija.services.cis.exceptions import SigningError

logger = logging.getLogger("fiskalizacija.cis")

DS_NS = "http://www.w3.org/2000/09/xmldsig#"

EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
RSA_SHA1 = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
SHA1 = "http://www.w3.org/2000/09/xmldsig#sha1"
ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=False)


def _canonicalize(element: etree._Element) -> bytes:
    """Exclusive C14N without comments, the only canonicalization CIS accepts."""
    return etree.tostring(
        element,
        method="c14n",
        exclusive=True,
        with_comments=False,
    )


def _ds(tag: str) -> str:
    return f"{{{DS_NS}}}{tag}"


def _parse(xml: bytes | str) -> etree._Element:
    if isinstance(xml, str):
        xml = xml.encode("utf-8")
    try:
        return etree.fromstring(xml, _PARSER)
    except etree.XMLSyntaxError as exc:
        logger.exception("Malformed XML given to the signer: %s", exc)
        raise SigningError(f"Malformed XML: {exc}") from exc


def _find_by_id(root: etree._Element, sign_id: str) -> etree._Element:
    matches: List[etree._Element] = root.xpath("//*[@Id=$id]", id=sign_id)
    if not matches:
        raise SigningError(f"No element with Id={sign_id!r} to sign.")
    if len(matches) > 1:
        raise SigningError(f"Id={sign_id!r} is not unique ({len(matches)} elements).")
    return matches[0]


def sign_xml(xml: bytes | str, sign_id: str, certificate: FiscalCertificate) -> bytes:
    """
    Enveloped XML-DSIG over the element whose Id is sign_id.

    Profile:
        * Transforms: enveloped-signature, then exclusive C14N
        * CanonicalizationMethod: exclusive C14N
        * SignatureMethod: RSA-SHA1, DigestMethod: SHA1
        * KeyInfo: leaf certificate only

    <Signature> is appended as the last child of the signed element.
    """
    if not sign_id:
        raise SigningError("sign_id must not be empty.")

    root = _parse(xml)
    signed_elem = _find_by_id(root, sign_id)

    if signed_elem.find(_ds("Signature")) is not None:
        raise SigningError(f"Element Id={sign_id!r} is already signed.")

    try:
        # 1. Digest of the element without the signature (enveloped transform)
        digest = hashlib.sha1(_canonicalize(signed_elem)).digest()

        # 2. <Signature>
        signature = etree.Element(_ds("Signature"), nsmap={None: DS_NS})
        signed_info = etree.SubElement(signature, _ds("SignedInfo"))
        etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=EXC_C14N)
        etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=RSA_SHA1)

        reference = etree.SubElement(signed_info, _ds("Reference"), URI=f"#{sign_id}")
        transforms = etree.SubElement(reference, _ds("Transforms"))
        etree.SubElement(transforms, _ds("Transform"), Algorithm=ENVELOPED)
        etree.SubElement(transforms, _ds("Transform"), Algorithm=EXC_C14N)
        etree.SubElement(reference, _ds("DigestMethod"), Algorithm=SHA1)
        etree.SubElement(reference, _ds("DigestValue")).text = base64.b64encode(digest).decode("ascii")

        signature_value = etree.SubElement(signature, _ds("SignatureValue"))

        key_info = etree.SubElement(signature, _ds("KeyInfo"))
        x509_data = etree.SubElement(key_info, _ds("X509Data"))
        etree.SubElement(x509_data, _ds("X509Certificate")).text = certificate.certificate_base64()

        # 3. Into the tree first: SignedInfo is canonicalized in its final context
        signed_elem.append(signature)

        signature_value.text = base64.b64encode(
            certificate.sign(_canonicalize(signed_info))
        ).decode("ascii")

        signed_xml = etree.tostring(
            root,
            encoding="UTF-8",
            xml_declaration=True,
            pretty_print=False,
        )
    except SigningError:
        raise
    except Exception as exc:
        logger.exception("XML-DSIG signing failed: %s", exc)
        raise SigningError(f"Error signing the XML: {exc}") from exc

    logger.info("XML signed (RSA-SHA1, exc-c14n) Id=%s by %s", sign_id, certificate.subject_cn)
    logger.debug("Signed XML: %s", signed_xml.decode("utf-8"))
    return signed_xml


def verify_xml_signature(xml: bytes | str, sign_id: str) -> bool:
    """
    Checks a document produced by sign_xml(): recomputes the reference
    digest and verifies SignatureValue with the embedded certificate.

    Returns False on any mismatch; raises SigningError only when the
    document has no signature for sign_id at all.
    """
    root = _parse(xml)
    signed_elem = _find_by_id(root, sign_id)

    signature = signed_elem.find(_ds("Signature"))
    if signature is None:
        raise SigningError(f"Element Id={sign_id!r} carries no Signature.")

    signed_info = signature.find(_ds("SignedInfo"))
    reference = signed_info.find(_ds("Reference")) if signed_info is not None else None
    digest_value = signature.findtext(f"{_ds('SignedInfo')}/{_ds('Reference')}/{_ds('DigestValue')}")
    signature_value = signature.findtext(_ds("SignatureValue"))
    cert_b64 = signature.findtext(f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}")

    if reference is None or not digest_value or not signature_value or not cert_b64:
        logger.warning("Signature for Id=%s is incomplete", sign_id)
        return False
    if reference.get("URI") != f"#{sign_id}":
        logger.warning("Reference URI %s does not point at #%s", reference.get("URI"), sign_id)
        return False

    signed_info_c14n = _canonicalize(signed_info)

    # enveloped-signature transform
    signed_elem.remove(signature)
    digest = base64.b64encode(hashlib.sha1(_canonicalize(signed_elem)).digest()).decode("ascii")
    if digest != digest_value.strip():
        logger.warning("Digest mismatch for Id=%s", sign_id)
        return False

    try:
        cert = x509.load_der_x509_certificate(base64.b64decode(cert_b64))
        cert.public_key().verify(
            base64.b64decode(signature_value),
            signed_info_c14n,
            padding.PKCS1v15(),
            hashes.SHA1(),
        )
    except InvalidSignature:
        logger.warning("SignatureValue does not verify for Id=%s", sign_id)
        return False
    except ValueError as exc:
        logger.warning("Embedded certificate for Id=%s could not be read: %s", sign_id, exc)
        return False
    return True
