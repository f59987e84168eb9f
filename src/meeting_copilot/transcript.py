"""
Live transcript state and markdown export.

The aggregator keeps the canonical, ordered list of transcript segments:
partial results replace the pending tail, final results commit it.
"""

import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from .transcription_client import TranscriptEvent

DEFAULT_SPEAKER = "Speaker"


def format_clock(epoch_seconds: float) -> str:
    """Wall-clock label shown next to a segment, e.g. "14:05"."""
    return datetime.fromtimestamp(epoch_seconds).strftime("%H:%M")


@dataclass(frozen=True)
class TranscriptSegment:
    """One line of the transcript. Immutable once is_final is True."""
    id: str
    speaker: str
    text: str
    timestamp: str        # display label ("HH:MM")
    is_final: bool
    emitted_at: float     # epoch seconds of the event that last changed it

    @property
    def timestamp_ms(self) -> int:
        return int(self.emitted_at * 1000)


class TranscriptAggregator:
    """Applies transcript events in arrival order.

    At most one non-final segment exists, and only at the tail. Final
    segments are never revised.
    """

    def __init__(
        self,
        default_speaker: str = DEFAULT_SPEAKER,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.default_speaker = default_speaker
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self._segments: List[TranscriptSegment] = []

    def __len__(self) -> int:
        return len(self._segments)

    @property
    def pending(self) -> Optional[TranscriptSegment]:
        """The mutable tail segment, if a partial result is in progress."""
        if self._segments and not self._segments[-1].is_final:
            return self._segments[-1]
        return None

    def apply(self, event: TranscriptEvent) -> TranscriptSegment:
        """
        Merge one event into the transcript.

        Returns:
            The segment that was created or updated
        """
        pending = self.pending
        if pending is not None:
            segment = replace(
                pending,
                text=event.text,
                speaker=event.speaker or pending.speaker,
                timestamp=format_clock(event.emitted_at),
                is_final=event.is_final,
                emitted_at=event.emitted_at,
            )
            self._segments[-1] = segment
        else:
            segment = TranscriptSegment(
                id=self._new_id(),
                speaker=event.speaker or self.default_speaker,
                text=event.text,
                timestamp=format_clock(event.emitted_at),
                is_final=event.is_final,
                emitted_at=event.emitted_at,
            )
            self._segments.append(segment)
        return segment

    def segments(self) -> Tuple[TranscriptSegment, ...]:
        """Snapshot of all segments in display order."""
        return tuple(self._segments)

    def final_segments(self) -> Tuple[TranscriptSegment, ...]:
        return tuple(s for s in self._segments if s.is_final)

    def clear(self):
        self._segments = []


def format_offset(seconds: float) -> str:
    """Format seconds as HH:MM:SS or MM:SS."""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def generate_markdown(
    title: Optional[str],
    lines: Iterable[Tuple[str, str, float]],
    started_at: Optional[datetime] = None,
    duration_seconds: float = 0,
    include_timestamps: bool = True,
) -> str:
    """
    Render a transcript as markdown.

    Args:
        title: Meeting title (defaults to "Meeting Transcript")
        lines: (speaker, text, epoch_seconds) tuples in chronological order
        started_at: Meeting start; defaults to the first line's time
        duration_seconds: Recorded duration
        include_timestamps: Prefix each line with its offset from the start

    Returns:
        Markdown document
    """
    lines = [(speaker, text, ts) for speaker, text, ts in lines if text and text.strip()]
    if started_at is None:
        started_at = datetime.fromtimestamp(lines[0][2]) if lines else datetime.now()
    start_epoch = started_at.timestamp()
    participants = sorted({speaker for speaker, _, _ in lines})

    out = [
        f"# {title}" if title else "# Meeting Transcript",
        "",
        f"**Date**: {started_at.strftime('%Y-%m-%d %H:%M')}",
        f"**Duration**: {int(duration_seconds // 60)} minutes",
        f"**Participants**: {', '.join(participants)}",
        "",
        "---",
        "",
    ]

    if lines:
        out.append("## Full Transcript")
        out.append("")
        for speaker, text, ts in lines:
            if include_timestamps:
                offset = format_offset(max(0.0, ts - start_epoch))
                out.append(f"**[{offset}] {speaker}**: {text.strip()}")
            else:
                out.append(f"**{speaker}**: {text.strip()}")
            out.append("")

    return "\n".join(out)
