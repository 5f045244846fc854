"""Completion estimate from ffmpeg's diagnostic output.

ffmpeg prints the input duration once (``Duration: 00:03:25.43``) and then
repeatedly reports how far it has got, either in its stderr status line
(``time=00:01:02.50``) or, with ``-progress pipe:1``, as key=value lines on
stdout (``out_time_us=62500000``). The parser is fed raw text as it arrives
and turns it into a strictly increasing percentage.
"""

import math
import re
from collections.abc import Callable
from dataclasses import dataclass

DURATION_PATTERN = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
STATS_TIME_PATTERN = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
# Despite its name, ffmpeg's out_time_ms is also in microseconds
PROGRESS_TIME_PATTERN = re.compile(r"^out_time_(?:us|ms)=(\d+)\s*$")

MAX_RUNNING_PROGRESS = 99

_SEGMENT_SPLIT = re.compile(r"[\r\n]")


def parse_clock(hours: str, minutes: str, seconds: str) -> float:
    """Convert HH, MM and SS[.fraction] captures to seconds."""
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def _clock_position(match: re.Match[str]) -> float:
    return parse_clock(match.group(1), match.group(2), match.group(3))


def _microsecond_position(match: re.Match[str]) -> float:
    return int(match.group(1)) / 1_000_000


@dataclass(frozen=True)
class PositionFormat:
    """How the current position is reported: a pattern plus its decoder."""

    pattern: re.Pattern[str]
    decode: Callable[[re.Match[str]], float]


POSITION_FORMATS = {
    "stats": PositionFormat(STATS_TIME_PATTERN, _clock_position),
    "progress": PositionFormat(PROGRESS_TIME_PATTERN, _microsecond_position),
}


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ProgressParser:
    """Incremental duration/position scanner.

    Not thread-safe; callers feeding it from several reader threads must
    serialize calls to :meth:`feed`.
    """

    def __init__(self, position_format: str = "stats") -> None:
        if position_format not in POSITION_FORMATS:
            raise ValueError(f"Unknown progress format: {position_format}")
        self.position_format = POSITION_FORMATS[position_format]
        self.duration = 0.0
        self.last_progress = 0
        self._pending: dict[str, str] = {}

    def feed(self, chunk: str, source: str = "stderr") -> int | None:
        """Scan newly arrived output.

        Output is split on carriage returns and newlines; an unterminated
        trailing segment is carried over to the next call for the same
        source, so a pattern split across two reads is still matched.

        Args:
            chunk: Text read from the tool since the last call
            source: Stream name, keeps stdout and stderr segments apart

        Returns:
            The new progress percentage if it increased, otherwise None
        """
        buffered = self._pending.get(source, "") + chunk
        segments = _SEGMENT_SPLIT.split(buffered)
        self._pending[source] = segments.pop()

        reported: int | None = None
        for segment in segments:
            progress = self._scan(segment)
            if progress is not None:
                reported = progress
        return reported

    def _scan(self, segment: str) -> int | None:
        if not segment:
            return None

        if self.duration == 0:
            match = DURATION_PATTERN.search(segment)
            if match:
                self.duration = _clock_position(match)

        if self.duration <= 0:
            return None

        match = self.position_format.pattern.search(segment)
        if not match:
            return None

        position = self.position_format.decode(match)
        progress = min(MAX_RUNNING_PROGRESS, round_half_up(100 * position / self.duration))
        if progress <= self.last_progress:
            return None

        self.last_progress = progress
        return progress
