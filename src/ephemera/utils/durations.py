"""Разбор и форматирование длительностей в формате ``12h0m0s``.

Этот формат используется в метке ``lifetime`` на VM и в аргументах CLI:
последовательность чисел (возможно дробных) с единицами ``ns``, ``us``/``µs``,
``ms``, ``s``, ``m``, ``h``. Разрешение ``timedelta`` — микросекунды,
наносекунды отбрасываются.
"""

from __future__ import annotations

import re
from datetime import timedelta
from decimal import Decimal

_UNIT_MICROSECONDS: dict[str, Decimal] = {
    "ns": Decimal("0.001"),
    "us": Decimal(1),
    "µs": Decimal(1),
    "μs": Decimal(1),
    "ms": Decimal(1_000),
    "s": Decimal(1_000_000),
    "m": Decimal(60_000_000),
    "h": Decimal(3_600_000_000),
}

_COMPONENT_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")

_US_PER_SECOND = 1_000_000
_US_PER_MINUTE = 60 * _US_PER_SECOND
_US_PER_HOUR = 60 * _US_PER_MINUTE

# Диапазон int64 в наносекундах, как у меток, записанных Go-инструментами
_MAX_NS = 2**63 - 1
_MIN_NS = -(2**63)


def parse_duration(value: str) -> timedelta:
    """Разобрать строку длительности (``90s``, ``1h30m``, ``1.5h``, ``12h0m0s``).

    Raises:
        ValueError: Если строка пуста, содержит неизвестную единицу,
            посторонние символы или выходит за диапазон int64 наносекунд.
    """
    text = value.strip()
    original = text
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration {original!r}")

    total = Decimal(0)
    pos = 0
    while pos < len(text):
        match = _COMPONENT_RE.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {original!r}")
        number, unit = match.groups()
        total += Decimal(number) * _UNIT_MICROSECONDS[unit]
        pos = match.end()

    total_ns = sign * total * 1_000
    if not _MIN_NS <= total_ns <= _MAX_NS:
        raise ValueError(f"invalid duration {original!r}: out of range")
    return timedelta(microseconds=sign * int(total))


def format_duration(value: timedelta) -> str:
    """Отформатировать длительность в каноническом виде (``12h0m0s``, ``1m30s``, ``500ms``)."""
    total_us = value // timedelta(microseconds=1)
    if total_us == 0:
        return "0s"
    if total_us < 0:
        return "-" + format_duration(-value)

    if total_us < _US_PER_SECOND:
        if total_us % 1_000 == 0:
            return f"{total_us // 1_000}ms"
        return f"{total_us}µs"

    hours, rest = divmod(total_us, _US_PER_HOUR)
    minutes, rest = divmod(rest, _US_PER_MINUTE)
    seconds, micros = divmod(rest, _US_PER_SECOND)
    sec_text = str(seconds)
    if micros:
        sec_text += "." + f"{micros:06d}".rstrip("0")

    if hours:
        return f"{hours}h{minutes}m{sec_text}s"
    if minutes:
        return f"{minutes}m{sec_text}s"
    return f"{sec_text}s"


def round_to_second(value: timedelta) -> timedelta:
    """Округлить длительность до целых секунд (половины — от нуля)."""
    total_us = value // timedelta(microseconds=1)
    seconds, micros = divmod(abs(total_us), _US_PER_SECOND)
    if micros >= _US_PER_SECOND // 2:
        seconds += 1
    return timedelta(seconds=seconds if total_us >= 0 else -seconds)
