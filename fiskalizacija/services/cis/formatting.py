# fiskalizacija/services/cis/formatting.py
# -*- coding: utf-8 -*-
"""
Field formatting shared by the ZKI generator, the XML builder and the receipt data.

The ZKI date string and the XML date string must come from ONE instant:
callers pass the same datetime to format_zki_datetime() and
format_xml_datetime(), never two separately built timestamps.
"""
from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from zoneinfo import ZoneInfo

from django.utils import timezone

CROATIA_TZ = ZoneInfo("Europe/Zagreb")

ZKI_DATETIME_FORMAT = "%d.%m.%Y %H:%M:%S"
XML_DATETIME_FORMAT = "%d.%m.%YT%H:%M:%S"

_CENT = Decimal("0.01")


def to_decimal(value: Decimal | float | int | str | None) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats like 150.5 do not drag binary noise along
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def format_amount(value: Decimal | float | int | str | None) -> str:
    """
    Amount as CIS expects it: two decimals, dot separator, leading '-' if negative.

    format_amount(7) == "7.00"; format_amount(-150.5) == "-150.50".
    """
    amount = to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)
    if amount == 0:
        amount = abs(amount)  # never "-0.00"
    return f"{amount:.2f}"


def wall_clock(instant: datetime) -> datetime:
    """Croatian wall-clock time of an instant. Naive values are taken as wall-clock already."""
    if timezone.is_aware(instant):
        instant = timezone.localtime(instant, CROATIA_TZ)
    return instant.replace(microsecond=0, tzinfo=None)


def aware(instant: datetime) -> datetime:
    """Aware version of an instant; naive values are Croatian wall-clock time."""
    if timezone.is_naive(instant):
        return instant.replace(tzinfo=CROATIA_TZ)
    return instant


def format_zki_datetime(instant: datetime) -> str:
    """dd.MM.yyyy HH:mm:ss (space separator), used inside the ZKI data string."""
    return wall_clock(instant).strftime(ZKI_DATETIME_FORMAT)


def format_xml_datetime(instant: datetime) -> str:
    """dd.MM.yyyyTHH:mm:ss ('T' separator), used in DatVrijeme/DatumVrijeme."""
    return wall_clock(instant).strftime(XML_DATETIME_FORMAT)
