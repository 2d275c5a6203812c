# fiskalizacija/services/cis/xml_builder.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Optional

from lxml import etree

from fiskalizacija.services.cis.formatting import format_amount, format_xml_datetime
from fiskalizacija.services.cis.types import FiscalInvoiceRequest

logger = logging.getLogger("fiskalizacija.cis")

SOAP_NS = "http://schemas.xmlsoap.org/soap/envelope/"
F73_NS = "http://www.apis-it.hr/fin/2012/types/f73"


def new_sign_id() -> str:
    """Value of RacunZahtjev/@Id, referenced by the signature as '#<id>'."""
    return f"signXmlId{uuid.uuid4().hex[:12]}"


def new_message_id() -> str:
    """IdPoruke: a fresh UUID v4 for every attempt."""
    return str(uuid.uuid4())


def _tns(tag: str) -> str:
    return f"{{{F73_NS}}}{tag}"


def _add(parent: etree._Element, tag: str, text: str) -> etree._Element:
    elem = etree.SubElement(parent, _tns(tag))
    elem.text = text
    return elem


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _build_zaglavlje(parent: etree._Element, message_id: str, sent_at: datetime) -> None:
    zaglavlje = etree.SubElement(parent, _tns("Zaglavlje"))
    _add(zaglavlje, "IdPoruke", message_id)
    _add(zaglavlje, "DatumVrijeme", format_xml_datetime(sent_at))


def _build_racun(parent: etree._Element, request: FiscalInvoiceRequest, zki: str) -> None:
    """
    <Racun> in schema order. Element order is part of the contract: CIS
    validates against an xs:sequence and rejects reordered children.
    """
    racun = etree.SubElement(parent, _tns("Racun"))

    _add(racun, "Oib", request.oib)
    _add(racun, "USustPdv", _bool(request.vat_registered))
    _add(racun, "DatVrijeme", format_xml_datetime(request.issued_at))
    _add(racun, "OznSlijed", request.sequence_mark)

    br_rac = etree.SubElement(racun, _tns("BrRac"))
    _add(br_rac, "BrOznRac", request.invoice_number)
    _add(br_rac, "OznPosPr", request.business_space_code)
    _add(br_rac, "OznNapUr", request.cash_register_code)

    if request.vat_breakdown:
        pdv = etree.SubElement(racun, _tns("Pdv"))
        for line in request.vat_breakdown:
            porez = etree.SubElement(pdv, _tns("Porez"))
            _add(porez, "Stopa", format_amount(line.rate))
            _add(porez, "Osnovica", format_amount(line.base))
            _add(porez, "Iznos", format_amount(line.amount))

    _add(racun, "IznosUkupno", format_amount(request.total_amount))
    _add(racun, "NacinPlac", request.payment_method.code)
    _add(racun, "OibOper", request.effective_operator_oib)
    _add(racun, "ZastKod", zki)
    _add(racun, "NakDost", "false")

    if request.is_storno:
        _add(racun, "StornoRacun", request.original_jir or "")
        _add(racun, "StornoRazlog", request.storno_reason or "")


def build_invoice_xml(
    request: FiscalInvoiceRequest,
    zki: str,
    sign_id: str,
    message_id: str,
    *,
    sent_at: Optional[datetime] = None,
) -> bytes:
    """
    Unsigned SOAP 1.1 envelope carrying tns:RacunZahtjev.

    DatVrijeme is always built from request.issued_at, the same instant the
    ZKI was computed from. DatumVrijeme (message header) defaults to it too.
    """
    envelope = etree.Element(f"{{{SOAP_NS}}}Envelope", nsmap={"soap": SOAP_NS})
    body = etree.SubElement(envelope, f"{{{SOAP_NS}}}Body")

    zahtjev = etree.SubElement(
        body,
        _tns("RacunZahtjev"),
        nsmap={"tns": F73_NS},
    )
    zahtjev.set("Id", sign_id)

    _build_zaglavlje(zahtjev, message_id, sent_at or request.issued_at)
    _build_racun(zahtjev, request, zki)

    xml_bytes = etree.tostring(
        envelope,
        encoding="UTF-8",
        xml_declaration=True,
        pretty_print=False,
    )

    logger.debug(
        "RacunZahtjev built for invoice %s/%s/%s (Id=%s, IdPoruke=%s)",
        request.invoice_number,
        request.business_space_code,
        request.cash_register_code,
        sign_id,
        message_id,
    )
    return xml_bytes
