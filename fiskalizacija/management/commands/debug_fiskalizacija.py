# fiskalizacija/management/commands/debug_fiskalizacija.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import json
from decimal import Decimal, InvalidOperation
from typing import Any

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from fiskalizacija.services.cis.exceptions import FiscalError
from fiskalizacija.services.cis.signer import verify_xml_signature
from fiskalizacija.services.cis.types import FiscalInvoiceRequest, PaymentMethod, VatLine
from fiskalizacija.services.cis.workflow import get_fiscalization_service
from fiskalizacija.services.cis.zki import zki_data_string


class Command(BaseCommand):
    help = (
        "Debug of the CIS pipeline for one test invoice.\n"
        "Prints the ZKI data string, the ZKI and the signed RacunZahtjev; with --send "
        "also submits it and prints the parsed answer."
    )

    def add_arguments(self, parser) -> None:
        parser.add_argument("invoice_number", help="Invoice number (digits only).")
        parser.add_argument("amount", help="Total amount, e.g. 7.00")
        parser.add_argument(
            "--vat-rate",
            default="25.00",
            help="VAT rate for a single-rate breakdown (default: 25.00). Use 0 for none.",
        )
        parser.add_argument(
            "--payment",
            choices=[method.value for method in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument(
            "--send",
            action="store_true",
            help="Submit to CIS (TEST unless FISCAL_ALLOW_PRODUCTION is set). Default: dry run.",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        try:
            amount = Decimal(options["amount"]).quantize(Decimal("0.01"))
            rate = Decimal(options["vat_rate"]).quantize(Decimal("0.01"))
        except InvalidOperation as exc:
            raise CommandError(f"Invalid amount or VAT rate: {exc}") from exc

        try:
            service = get_fiscalization_service()
        except FiscalError as exc:
            raise CommandError(f"Cannot build the fiscalization service: {exc}") from exc

        config = service.config
        vat_breakdown = ()
        if rate > 0:
            base = (amount / (1 + rate / 100)).quantize(Decimal("0.01"))
            vat_breakdown = (VatLine(rate=rate, base=base, amount=amount - base),)

        request = FiscalInvoiceRequest(
            oib=config.oib,
            issued_at=timezone.now(),
            invoice_number=options["invoice_number"],
            business_space_code=config.business_space_code,
            cash_register_code=config.cash_register_code,
            total_amount=amount,
            payment_method=PaymentMethod(options["payment"]),
            vat_breakdown=vat_breakdown,
            operator_oib=config.operator_oib,
            vat_registered=config.vat_registered,
            sequence_mark=config.sequence_mark,
        )

        self.stdout.write(
            self.style.MIGRATE_HEADING(
                f"▶ Debug CIS for invoice {request.invoice_number}/{request.business_space_code}/"
                f"{request.cash_register_code} ({config.environment.value})"
            )
        )
        self.stdout.write(f"ZKI data string: {zki_data_string(request)}")

        if not options["send"]:
            try:
                signed = service.prepare(request)
            except FiscalError as exc:
                raise CommandError(f"{exc.kind.value}: {exc}") from exc
            self.stdout.write(f"ZKI: {signed.zki}")
            self.stdout.write(f"IdPoruke: {signed.message_id}")
            self.stdout.write(self.style.HTTP_INFO("\nSigned RacunZahtjev:\n"))
            self.stdout.write(signed.xml.decode("utf-8"))
            if verify_xml_signature(signed.xml, signed.sign_id):
                self.stdout.write(self.style.SUCCESS("\nOK: signature verifies with the embedded certificate."))
            else:
                self.stderr.write(self.style.ERROR("\nERROR: signature does not verify."))
            return

        try:
            result = service.submit_invoice(request)
        except FiscalError as exc:
            raise CommandError(f"{exc.kind.value}: {exc}") from exc

        self._print_result(result.as_dict(), ok=result.ok)

    def _print_result(self, data: dict, ok: bool) -> None:
        style = self.style.SUCCESS if ok else self.style.ERROR
        self.stdout.write(style(f"\nResult: {data.get('status')}"))
        self.stdout.write(json.dumps(data, indent=2, ensure_ascii=False, default=str))
