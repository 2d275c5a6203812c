# fiskalizacija/management/commands/check_fiscal_certificate.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from datetime import timedelta
from typing import Any

from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from fiskalizacija.services.cis.config import FiscalConfig
from fiskalizacija.services.cis.exceptions import CertificateError
from fiskalizacija.services.cis.workflow import load_certificate


class Command(BaseCommand):
    help = (
        "Checks the configured fiscal certificate (FISCAL_CERT_PATH / FISCAL_CERT_BASE64): "
        "opens the PKCS#12 with FISCAL_CERT_PASSWORD and reports validity."
    )

    def add_arguments(self, parser) -> None:
        parser.add_argument(
            "--warn-days",
            type=int,
            default=30,
            help="Warn when the certificate expires within this many days (default: 30).",
        )

    def handle(self, *args: Any, **options: Any) -> None:
        config = FiscalConfig.from_settings()
        source = config.certificate_path or ("FISCAL_CERT_BASE64" if config.certificate_blob else None)
        if not source:
            raise CommandError("No fiscal certificate configured (FISCAL_CERT_PATH or FISCAL_CERT_BASE64).")

        self.stdout.write(f"Certificate source: {source}")
        self.stdout.write(f"Environment: {config.environment.value} ({config.url})")

        try:
            certificate = load_certificate(config)
        except CertificateError as exc:
            raise CommandError(f"{exc.reason}: {exc}") from exc

        with certificate:
            self.stdout.write(self.style.SUCCESS("OK: certificate opened with the configured password."))
            self.stdout.write(f"INFO: Subject: {certificate.subject_cn}")
            self.stdout.write(f"INFO: Issuer: {certificate.issuer_cn}")
            self.stdout.write(f"INFO: Serial: {certificate.serial_number:x}")
            self.stdout.write(f"INFO: Valid from {certificate.not_before} to {certificate.not_after}")

            remaining = certificate.not_after - timezone.now()
            if remaining < timedelta(days=options["warn_days"]):
                self.stdout.write(
                    self.style.WARNING(f"WARNING: certificate expires in {remaining.days} days.")
                )
            else:
                self.stdout.write(self.style.SUCCESS(f"OK: valid for another {remaining.days} days."))
