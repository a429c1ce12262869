"""Device command extraction from assistant text.

Turns natural-language fragments produced by the realtime API into at most
one structured Command. Matching is case-insensitive substring matching over
the whole candidate text, driven by an ordered rule table: the first rule
that matches decides the outcome and later rules are not consulted.

Precedence:
    1. "play" (without "pause")              → play
    2. "pause" or "stop"                     → pause
    3. "volume up" or "increase volume"      → volume(+0.1)
    4. "volume down" or "decrease volume"    → volume(-0.1)
    5. "mute" (without "unmute")             → mute
    6. "unmute"                              → unmute
    7. "restart" or "beginning"              → seek(0)
    8. "fullscreen"                          → fullscreen
    9. "load video" + an http(s) URL         → load(url)

Exclusion guards ignore a keyword directly preceded by a negation ("not",
"never", "don't"), so "play the video, do not pause" still resolves to play.

Extraction is deterministic and side-effect free. It is called for every
transcript delta and again for the completed message, so the same command
may be produced more than once for one utterance.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

from voice_gateway.services.realtime_relay.models import (
    Command,
    FullscreenCommand,
    LoadCommand,
    MuteCommand,
    PauseCommand,
    PlayCommand,
    SeekCommand,
    UnmuteCommand,
    VolumeCommand,
)

VOLUME_STEP = 0.1

_URL_PATTERN = re.compile(r"https?://\S+")
_NEGATION_PATTERN = re.compile(r"\b(?:not|never|don['’]?t)\s+$")


def mentions(lowered: str, phrase: str) -> bool:
    """Whether ``phrase`` occurs in ``lowered`` at least once without a preceding negation."""
    start = lowered.find(phrase)
    while start != -1:
        if not _NEGATION_PATTERN.search(lowered, 0, start):
            return True
        start = lowered.find(phrase, start + 1)
    return False


def _first_url(text: str) -> str | None:
    match = _URL_PATTERN.search(text)
    return match.group(0) if match else None


@dataclass(frozen=True)
class CommandRule:
    """One row of the extraction table.

    The rule matches when any phrase in ``any_of`` occurs and no phrase in
    ``none_of`` is mentioned outside a negation. ``build`` receives the
    original-case text and may return None to match without producing a
    command.
    """

    name: str
    any_of: tuple[str, ...]
    build: Callable[[str], Command | None]
    none_of: tuple[str, ...] = ()

    def matches(self, lowered: str) -> bool:
        if not any(phrase in lowered for phrase in self.any_of):
            return False
        return not any(mentions(lowered, phrase) for phrase in self.none_of)


def _build_load(text: str) -> Command | None:
    url = _first_url(text)
    return LoadCommand(value=url) if url else None


DEFAULT_RULES: tuple[CommandRule, ...] = (
    CommandRule("play", ("play",), lambda _: PlayCommand(), none_of=("pause",)),
    CommandRule("pause", ("pause", "stop"), lambda _: PauseCommand()),
    CommandRule("volume_up", ("volume up", "increase volume"), lambda _: VolumeCommand(value=VOLUME_STEP)),
    CommandRule("volume_down", ("volume down", "decrease volume"), lambda _: VolumeCommand(value=-VOLUME_STEP)),
    CommandRule("mute", ("mute",), lambda _: MuteCommand(), none_of=("unmute",)),
    CommandRule("unmute", ("unmute",), lambda _: UnmuteCommand()),
    CommandRule("restart", ("restart", "beginning"), lambda _: SeekCommand(value=0)),
    CommandRule("fullscreen", ("fullscreen",), lambda _: FullscreenCommand()),
    CommandRule("load", ("load video",), _build_load),
)


class CommandExtractor:
    """Ordered-rule classifier from transcript text to a device Command.

    Usage::

        extractor = CommandExtractor()
        command = extractor.extract("Sure, pausing the video now")
        # PauseCommand()
    """

    def __init__(self, rules: tuple[CommandRule, ...] = DEFAULT_RULES) -> None:
        self._rules = rules

    @property
    def rules(self) -> tuple[CommandRule, ...]:
        return self._rules

    def extract(self, text: str) -> Command | None:
        """Return the command for ``text``, or None when no rule matches."""
        if not text:
            return None

        lowered = text.lower()
        for rule in self._rules:
            if rule.matches(lowered):
                return rule.build(text)
        return None


_default_extractor = CommandExtractor()


def extract_command(text: str) -> Command | None:
    """Classify ``text`` with the default rule table."""
    return _default_extractor.extract(text)
