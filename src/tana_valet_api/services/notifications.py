from __future__ import annotations

from typing import Protocol

from loguru import logger


class Notifier(Protocol):
    async def send_sms(self, phone_number: str, message: str) -> None:
        ...


class LoggingNotifier:
    """Default notifier: SMS delivery is handled outside this service."""

    async def send_sms(self, phone_number: str, message: str) -> None:
        logger.info("notifier.sms phone_number={} message={!r}", phone_number, message)


def format_phone_number(phone_number: str, country_code: str = "251") -> str:
    formatted = phone_number.strip()
    if formatted.startswith("+"):
        return formatted
    if formatted.startswith(country_code):
        return f"+{formatted}"
    if formatted.startswith("0"):
        return f"+{country_code}{formatted[1:]}"
    return f"+{formatted}"


_notifier_singleton: Notifier = LoggingNotifier()


def get_notifier() -> Notifier:
    return _notifier_singleton
