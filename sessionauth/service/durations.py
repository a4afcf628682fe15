from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sessionauth.logging import get_logger

logger = get_logger(__name__)

_DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")


class DurationUnit(str, Enum):
    SECONDS = "s"
    MINUTES = "m"
    HOURS = "h"
    DAYS = "d"


_UNIT_SECONDS = {
    DurationUnit.SECONDS: 1,
    DurationUnit.MINUTES: 60,
    DurationUnit.HOURS: 60 * 60,
    DurationUnit.DAYS: 24 * 60 * 60,
}


class DurationParseError(ValueError):
    """Raised when a duration string is not of the form ``<digits><s|m|h|d>``."""

    def __init__(self, text: object, reason: str = "expected <digits><s|m|h|d>") -> None:
        super().__init__(f"invalid duration {text!r}: {reason}")
        self.text = text
        self.reason = reason


@dataclass(frozen=True)
class Duration:
    amount: int
    unit: DurationUnit

    @classmethod
    def parse(cls, text: str) -> "Duration":
        """Parse ``"30s"``, ``"5m"``, ``"12h"`` or ``"7d"`` into a Duration.

        Raises:
            DurationParseError: input is not a string, does not match the
                grammar, or has a zero amount.
        """
        if not isinstance(text, str):
            raise DurationParseError(text, "expected a string")
        match = _DURATION_PATTERN.match(text.strip())
        if not match:
            raise DurationParseError(text)
        amount = int(match.group(1))
        if amount == 0:
            raise DurationParseError(text, "duration must be positive")
        return cls(amount=amount, unit=DurationUnit(match.group(2)))

    @property
    def total_seconds(self) -> int:
        return self.amount * _UNIT_SECONDS[self.unit]

    @property
    def timedelta(self) -> timedelta:
        return timedelta(seconds=self.total_seconds)

    def __str__(self) -> str:
        return f"{self.amount}{self.unit.value}"


ONE_DAY = Duration(1, DurationUnit.DAYS)
FIVE_MINUTES = Duration(5, DurationUnit.MINUTES)


def parse_duration_or_default(
    text: str, default: Duration = ONE_DAY, *, setting: str = "duration"
) -> Duration:
    """Lenient parse that falls back to ``default`` and says so in the log."""
    try:
        return Duration.parse(text)
    except DurationParseError as exc:
        logger.warning(
            "duration_parse_fallback",
            setting=setting,
            value=str(text),
            reason=exc.reason,
            fallback=str(default),
        )
        return default
