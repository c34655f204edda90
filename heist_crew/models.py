"""Core data models for the heist crew."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class HeistPhase(str, Enum):
    IDLE = "IDLE"
    ANNOUNCING = "ANNOUNCING"
    VOTING = "VOTING"
    IN_PROGRESS = "IN_PROGRESS"
    DISTRIBUTING = "DISTRIBUTING"
    COOLDOWN = "COOLDOWN"


class SessionStatus(str, Enum):
    ANNOUNCED = "announced"
    VOTING = "voting"
    IN_PROGRESS = "in_progress"
    DISTRIBUTING = "distributing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


@dataclass(frozen=True)
class CrimeDefinition:
    id: str
    name: str
    difficulty: str
    base_probability: float
    payout_min: int
    payout_max: int
    aliases: List[str] = field(default_factory=list)


@dataclass
class HeistSession:
    id: int
    room_id: str
    status: SessionStatus
    created_at: datetime
    crime_type: Optional[str] = None
    participant_count: int = 0
    total_payout: int = 0
    success: Optional[bool] = None
    trust_delta: int = 0
    completed_at: Optional[datetime] = None


@dataclass
class Participant:
    heist_id: int
    username: str
    vote: str
    joined_at: datetime
    voted_at: datetime
    payout: Optional[int] = None


@dataclass
class TrustRecord:
    username: str
    trust_score: int
    last_participation_time: Optional[datetime] = None
    heists_participated: int = 0


@dataclass(frozen=True)
class CrimeOutcome:
    success: bool
    total_payout: int
    trust_delta: int
    success_probability: float = 0.0
    roll: Optional[float] = None


@dataclass(frozen=True)
class PhaseTask:
    """Record carried by an armed timer; compared against the live controller on fire."""

    room_id: str
    generation: int
    phase: HeistPhase


@dataclass
class PayoutLine:
    username: str
    amount: int
    trust_delta: int
    status: str
    error: Optional[str] = None


@dataclass
class PayoutReport:
    session_id: int
    total_payout: int
    lines: List[PayoutLine] = field(default_factory=list)
    duplicate: bool = False

    @property
    def failed(self) -> List[str]:
        return [line.username for line in self.lines if line.status != "credited"]

    def credited_total(self) -> int:
        return sum(line.amount for line in self.lines if line.status == "credited")


@dataclass
class HeistStatus:
    room_id: str
    state: HeistPhase
    next_event_time: Optional[datetime]
    generation: int
    session_id: Optional[int] = None
    offered_crimes: List[str] = field(default_factory=list)
    votes: Dict[str, int] = field(default_factory=dict)
    halted: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "room_id": self.room_id,
            "state": self.state.value,
            "next_event_time": self.next_event_time.isoformat() if self.next_event_time else None,
            "generation": self.generation,
            "session_id": self.session_id,
            "offered_crimes": list(self.offered_crimes),
            "votes": dict(self.votes),
            "halted": self.halted,
        }


@dataclass
class Event:
    timestamp: datetime
    room_id: str
    action: str
    payload: Dict[str, object]


__all__ = [
    "HeistPhase",
    "SessionStatus",
    "CrimeDefinition",
    "HeistSession",
    "Participant",
    "TrustRecord",
    "CrimeOutcome",
    "PhaseTask",
    "PayoutLine",
    "PayoutReport",
    "HeistStatus",
    "Event",
]
