"""
Reply grammar.

Resolves a patient's free-text reply to one of the proposed slots using a
small, enumerable grammar:

- an ordinal digit ("2", "#2", "option 2", "2nd")
- an ordinal word ("two", "second")
- "the Nth one" ("the second one", "the 3rd one")
- a clock time matching exactly one slot's local start ("10:30", "2pm", "at 9")

A day number next to a month name ("Feb 4", "4th of March") belongs to a
date and is never an option. An explicit ordinal always wins over a clock
time. Anything else raises ``AmbiguousInput`` and the caller re-prompts.
"""

import logging
import re
from dataclasses import dataclass
from datetime import tzinfo
from typing import Optional, Sequence

from followup.core.errors import AmbiguousInput
from followup.core.scheduling.types import CandidateSlot

logger = logging.getLogger(__name__)


ORDINAL_WORDS = {
    "one": 1, "first": 1,
    "two": 2, "second": 2,
    "three": 3, "third": 3,
    "four": 4, "fourth": 4,
    "five": 5, "fifth": 5,
    "six": 6, "sixth": 6,
    "seven": 7, "seventh": 7,
    "eight": 8, "eighth": 8,
    "nine": 9, "ninth": 9,
    "ten": 10, "tenth": 10,
}

# Clock-time patterns, tried in order; matched spans are blanked so the
# digits inside them are never read as ordinals.
TIME_WITH_MERIDIEM = re.compile(
    r"(?<![\d:])(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*(?P<meridiem>[ap])\.?\s?m\b\.?"
)
TIME_WITH_COLON = re.compile(r"(?<![\d:])(?P<hour>\d{1,2}):(?P<minute>\d{2})(?![\d:])")
TIME_AFTER_AT = re.compile(r"\bat\s+(?P<hour>\d{1,2})\b(?!\s*:)")

_MONTHS = (
    r"jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|june?|july?|aug(?:ust)?"
    r"|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?"
)
# "may" only before the number: "2 may work" is an option, "may 2" a date
DATE_MONTH_FIRST = re.compile(rf"\b(?:{_MONTHS}|may)\.?\s+\d{{1,2}}(?:st|nd|rd|th)?\b")
DATE_DAY_FIRST = re.compile(rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+(?:of\s+)?(?:{_MONTHS})\b")

NTH_ONE = re.compile(r"\bthe\s+(?P<nth>\d{1,2}(?:st|nd|rd|th)?|[a-z]+)\s+one\b")
# "the one" left behind once a time is blanked ("the 10:30 one") is a pronoun
THE_ONE = re.compile(r"\bthe\s+one\b")
TOKEN = re.compile(r"\d+(?:st|nd|rd|th)?|[a-z]+")


@dataclass(frozen=True)
class ClockTime:
    """A time-of-day mentioned in a reply."""

    hour: int
    minute: int = 0
    meridiem: Optional[str] = None  # "a" or "p"

    def candidate_hours(self) -> set[int]:
        """24-hour values this mention could mean."""
        if self.meridiem:
            return {self.hour % 12 + (12 if self.meridiem == "p" else 0)}
        if self.hour == 0 or self.hour >= 12:
            return {self.hour}
        return {self.hour, self.hour + 12}

    def matches(self, slot: CandidateSlot, tz: tzinfo) -> bool:
        local = slot.interval.start.astimezone(tz)
        return local.minute == self.minute and local.hour in self.candidate_hours()


def _parse_ordinal_token(token: str) -> Optional[int]:
    if token in ORDINAL_WORDS:
        return ORDINAL_WORDS[token]
    digits = re.match(r"^(\d{1,2})(?:st|nd|rd|th)?$", token)
    if digits:
        return int(digits.group(1))
    return None


def _blank(text: str, match: re.Match) -> str:
    return text[: match.start()] + " " * (match.end() - match.start()) + text[match.end():]


def _extract_times(text: str) -> tuple[list[ClockTime], str]:
    times: list[ClockTime] = []

    for pattern in (TIME_WITH_MERIDIEM, TIME_WITH_COLON, TIME_AFTER_AT):
        for match in list(pattern.finditer(text)):
            groups = match.groupdict()
            hour = int(groups["hour"])
            minute = int(groups.get("minute") or 0)
            meridiem = groups.get("meridiem")
            if meridiem and not 1 <= hour <= 12:
                continue
            if hour > 23 or minute > 59:
                continue
            times.append(ClockTime(hour=hour, minute=minute, meridiem=meridiem))
            text = _blank(text, match)

    return times, text


def _extract_ordinals(text: str) -> list[int]:
    ordinals: list[int] = []

    for pattern in (DATE_MONTH_FIRST, DATE_DAY_FIRST):
        for match in list(pattern.finditer(text)):
            text = _blank(text, match)

    for match in list(NTH_ONE.finditer(text)):
        value = _parse_ordinal_token(match.group("nth"))
        if value is not None:
            ordinals.append(value)
            text = _blank(text, match)

    for match in list(THE_ONE.finditer(text)):
        text = _blank(text, match)

    for token in TOKEN.findall(text):
        value = _parse_ordinal_token(token)
        if value is not None:
            ordinals.append(value)

    return ordinals


def resolve_selection(
    body: str,
    slots: Sequence[CandidateSlot],
    tz: tzinfo,
) -> CandidateSlot:
    """Resolve a reply to exactly one proposed slot.

    Args:
        body: Raw reply text
        slots: Currently proposed slots
        tz: Timezone the patient saw the slot times in

    Returns:
        The selected CandidateSlot

    Raises:
        AmbiguousInput: If the reply matches no slot or more than one
    """
    text = (body or "").lower()
    times, remainder = _extract_times(text)
    ordinals = _extract_ordinals(remainder)

    by_ordinal = {slot.ordinal: slot for slot in slots}
    ordinal_hits = sorted({n for n in ordinals if n in by_ordinal})

    if len(ordinal_hits) == 1:
        return by_ordinal[ordinal_hits[0]]
    if len(ordinal_hits) > 1:
        raise AmbiguousInput("multiple_options", tuple(ordinal_hits))

    time_hits = sorted({
        slot.ordinal
        for slot in slots
        for clock in times
        if clock.matches(slot, tz)
    })

    if len(time_hits) == 1:
        return by_ordinal[time_hits[0]]
    if len(time_hits) > 1:
        raise AmbiguousInput("multiple_times", tuple(time_hits))
    if ordinals:
        raise AmbiguousInput("unknown_option")

    raise AmbiguousInput("no_match")
