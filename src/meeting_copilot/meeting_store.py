"""
Meeting persistence.

PersistenceGateway is the contract the live session saves through.
JsonMeetingStore keeps every meeting and its transcript rows in one JSON file,
rewritten atomically on each change.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional

from .logger import log_error
from .utils import write_atomic


@dataclass
class MeetingSummary:
    id: int
    title: str
    date: str                     # ISO-8601, local time
    duration: int = 0             # seconds
    summary: Optional[str] = None


@dataclass
class TranscriptRow:
    speaker: str
    text: str
    timestamp: int                # epoch milliseconds


@dataclass
class MeetingDetail(MeetingSummary):
    transcripts: List[TranscriptRow] = field(default_factory=list)


class PersistenceGateway(ABC):
    """Durable storage for meetings and their transcripts."""

    @abstractmethod
    def create_meeting(self, title: str) -> int:
        """Create a meeting dated now and return its id."""
        pass

    @abstractmethod
    def append_transcript(self, meeting_id: int, speaker: str, text: str, timestamp_ms: int):
        """
        Add one transcript line to a meeting.

        Raises:
            KeyError: If the meeting does not exist
        """
        pass

    def append_transcripts(self, meeting_id: int, rows: Iterable[TranscriptRow]):
        """
        Add many transcript lines to a meeting.

        Stores that can write in one step should override this.

        Raises:
            KeyError: If the meeting does not exist
        """
        for row in rows:
            self.append_transcript(meeting_id, row.speaker, row.text, row.timestamp)

    @abstractmethod
    def list_meetings(self) -> List[MeetingSummary]:
        """All meetings, newest first."""
        pass

    @abstractmethod
    def get_meeting_detail(self, meeting_id: int) -> Optional[MeetingDetail]:
        """Meeting plus its transcript rows in time order, or None if not found."""
        pass

    @abstractmethod
    def update_meeting(self, meeting_id: int, duration: Optional[int] = None, summary: Optional[str] = None):
        """
        Update duration and/or summary.

        Raises:
            KeyError: If the meeting does not exist
        """
        pass


class JsonMeetingStore(PersistenceGateway):
    """PersistenceGateway backed by a single JSON file."""

    def __init__(self, path):
        self.path = Path(path)

    def _load(self) -> dict:
        if not self.path.exists():
            return {"next_id": 1, "meetings": []}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            log_error(f"Meeting store {self.path} is corrupt", e)
            raise
        if not isinstance(data, dict) or not isinstance(data.get("meetings"), list):
            raise ValueError(f"Meeting store {self.path} has an unexpected layout")
        data.setdefault("next_id", max((m["id"] for m in data["meetings"]), default=0) + 1)
        return data

    def _save(self, data: dict):
        write_atomic(self.path, json.dumps(data, indent=2, ensure_ascii=False))

    @staticmethod
    def _find(data: dict, meeting_id: int) -> dict:
        for meeting in data["meetings"]:
            if meeting["id"] == meeting_id:
                return meeting
        raise KeyError(meeting_id)

    def create_meeting(self, title: str) -> int:
        data = self._load()
        meeting_id = data["next_id"]
        data["next_id"] = meeting_id + 1
        data["meetings"].append({
            "id": meeting_id,
            "title": title,
            "date": datetime.now().isoformat(timespec="seconds"),
            "duration": 0,
            "summary": None,
            "transcripts": [],
        })
        self._save(data)
        return meeting_id

    def append_transcript(self, meeting_id: int, speaker: str, text: str, timestamp_ms: int):
        data = self._load()
        meeting = self._find(data, meeting_id)
        meeting["transcripts"].append({"speaker": speaker, "text": text, "timestamp": int(timestamp_ms)})
        self._save(data)

    def append_transcripts(self, meeting_id: int, rows: Iterable[TranscriptRow]):
        """Append all rows with a single read and a single write."""
        data = self._load()
        meeting = self._find(data, meeting_id)
        meeting["transcripts"].extend(
            {"speaker": row.speaker, "text": row.text, "timestamp": int(row.timestamp)} for row in rows
        )
        self._save(data)

    def update_meeting(self, meeting_id: int, duration: Optional[int] = None, summary: Optional[str] = None):
        data = self._load()
        meeting = self._find(data, meeting_id)
        if duration is not None:
            meeting["duration"] = int(duration)
        if summary is not None:
            meeting["summary"] = summary
        self._save(data)

    def list_meetings(self) -> List[MeetingSummary]:
        meetings = [
            MeetingSummary(
                id=m["id"],
                title=m.get("title") or "",
                date=m.get("date") or "",
                duration=m.get("duration") or 0,
                summary=m.get("summary"),
            )
            for m in self._load()["meetings"]
        ]
        # Newest first; ids break ties between meetings created in the same second
        meetings.sort(key=lambda m: (m.date, m.id), reverse=True)
        return meetings

    def get_meeting_detail(self, meeting_id: int) -> Optional[MeetingDetail]:
        try:
            meeting = self._find(self._load(), meeting_id)
        except KeyError:
            return None
        # sorted() is stable, so equal timestamps keep insertion order
        rows = sorted(meeting.get("transcripts", []), key=lambda r: r["timestamp"])
        return MeetingDetail(
            id=meeting["id"],
            title=meeting.get("title") or "",
            date=meeting.get("date") or "",
            duration=meeting.get("duration") or 0,
            summary=meeting.get("summary"),
            transcripts=[TranscriptRow(r["speaker"], r["text"], r["timestamp"]) for r in rows],
        )
