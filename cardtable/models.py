from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .cards import Card

LIMIT_ROUNDS = "rounds"
LIMIT_POINTS = "points"

STATE_CHANGE = "state_change"
HAND_COMPLETE = "hand_complete"
ROUND_COMPLETE = "round_complete"
SESSION_ENDED = "session_ended"


class ActionRejected(ValueError):
    """A rule or precondition violation. Never escapes handle_action."""


class Phase(str, Enum):
    SETUP = "SETUP"
    ACTIVE = "ACTIVE"
    DROP_PHASE = "DROP_PHASE"
    PLAY = "PLAY"
    SHOWDOWN = "SHOWDOWN"
    ENDED = "ENDED"


class PlayerStatus(str, Enum):
    BLIND = "BLIND"
    SEEN = "SEEN"
    PLAYING = "PLAYING"
    DROPPED = "DROPPED"
    ELIMINATED = "ELIMINATED"


class RequestKind(str, Enum):
    SIDE_SHOW = "SIDE_SHOW"
    SHOW = "SHOW"
    DECLARE = "DECLARE"


class TeenPattiAction(str, Enum):
    SEEN = "SEEN"
    FOLD = "FOLD"
    BET = "BET"
    SIDE_SHOW_REQUEST = "SIDE_SHOW_REQUEST"
    SIDE_SHOW_RESOLVE = "SIDE_SHOW_RESOLVE"
    SIDE_SHOW_CANCEL = "SIDE_SHOW_CANCEL"
    SHOW_REQUEST = "SHOW_REQUEST"
    SHOW_RESOLVE = "SHOW_RESOLVE"
    SHOW_CANCEL = "SHOW_CANCEL"


class RummyAction(str, Enum):
    DROP_PLAYER = "DROP_PLAYER"
    DRAW_CARD = "DRAW_CARD"
    DISCARD_CARD = "DISCARD_CARD"
    SHOW_CLOSED_JOKER = "SHOW_CLOSED_JOKER"
    DECLARE_RUMMY = "DECLARE_RUMMY"
    RESOLVE_DECLARE = "RESOLVE_DECLARE"
    DECLARE_CANCEL = "DECLARE_CANCEL"


class LedgerAction(str, Enum):
    RECORD_POINTS = "RECORD_POINTS"
    RECORD_DROP = "RECORD_DROP"
    RECORD_WINNER = "RECORD_WINNER"
    ELIMINATE_PLAYER = "ELIMINATE_PLAYER"
    RESET_ROUND = "RESET_ROUND"


def _snake(key: str) -> str:
    out = []
    for char in key:
        if char.isupper():
            out.append("_")
            out.append(char.lower())
        else:
            out.append(char)
    return "".join(out)


@dataclass
class SessionConfig:
    session_id: str = ""
    session_name: str = ""
    limit_type: str = LIMIT_ROUNDS
    total_rounds: int = 10
    target_score: int = 101
    seed: Optional[int] = None
    request_timeout: float = 60.0

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]] = None, **overrides: Any):
        """Build a config from camelCase or snake_case keys. Unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        aliases = {"game_limit_type": "limit_type"}
        for key, value in dict(raw or {}, **overrides).items():
            name = _snake(key)
            name = aliases.get(name, name)
            if name in known and value is not None:
                values[name] = value
        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> None:
        if self.limit_type not in (LIMIT_ROUNDS, LIMIT_POINTS):
            raise ValueError(f"Unknown limit type: {self.limit_type}")
        if self.total_rounds < 1:
            raise ValueError("total_rounds must be positive")
        if self.target_score < 1:
            raise ValueError("target_score must be positive")
        if self.request_timeout < 0:
            raise ValueError("request_timeout cannot be negative")


@dataclass
class TeenPattiConfig(SessionConfig):
    boot_amount: int = 5
    initial_stake: Optional[int] = None
    max_players: int = 17

    def validate(self) -> None:
        super().validate()
        if self.boot_amount < 1:
            raise ValueError("boot_amount must be positive")
        if self.initial_stake is None:
            self.initial_stake = self.boot_amount * 2
        if self.initial_stake < 2 or self.initial_stake % 2:
            raise ValueError("initial_stake must be an even amount of at least 2")


@dataclass
class RummyConfig(SessionConfig):
    limit_type: str = LIMIT_POINTS
    first_drop_penalty: int = 20
    middle_drop_penalty: int = 40
    wrong_show_penalty: int = 80
    max_hand_points: Optional[int] = 80
    hand_size: int = 13
    max_players: int = 6

    def validate(self) -> None:
        super().validate()
        if self.hand_size < 3:
            raise ValueError("hand_size must be at least 3")


@dataclass
class LedgerConfig(SessionConfig):
    limit_type: str = LIMIT_POINTS
    total_rounds: int = 999
    target_score: int = 100
    first_drop_penalty: int = 20
    middle_drop_penalty: int = 40
    max_players: int = 10


@dataclass
class RosterPlayer:
    id: str
    name: str
    seat: int
    balance: int = 0
    score: int = 0
    status: PlayerStatus = PlayerStatus.PLAYING

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], default_seat: int) -> "RosterPlayer":
        player_id = raw.get("id")
        if player_id is None or str(player_id).strip() == "":
            raise ValueError("Player id required")
        balance = raw.get("balance", raw.get("sessionBalance", raw.get("session_balance", 0))) or 0
        return cls(
            id=str(player_id),
            name=str(raw.get("name") or "").strip(),
            seat=int(raw.get("seat") or default_seat),
            balance=int(balance),
            score=int(raw.get("score") or 0),
        )

    @property
    def is_eliminated(self) -> bool:
        return self.status == PlayerStatus.ELIMINATED

    def as_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "seat": self.seat,
            "balance": self.balance,
            "score": self.score,
            "status": self.status.value,
        }


@dataclass
class TeenPattiPlayer:
    # One per player per hand; replaced wholesale by the next start_round.
    id: str
    name: str
    seat: int
    hand: List[Card] = field(default_factory=list)
    status: PlayerStatus = PlayerStatus.BLIND
    folded: bool = False
    invested: int = 0

    @property
    def is_out(self) -> bool:
        return self.folded


@dataclass
class RummyPlayer:
    id: str
    name: str
    seat: int
    hand: List[Card] = field(default_factory=list)
    status: PlayerStatus = PlayerStatus.PLAYING
    has_drawn: bool = False
    drawn_this_turn: bool = False
    joker_revealed: bool = False
    round_score: int = 0

    @property
    def is_out(self) -> bool:
        return self.status == PlayerStatus.DROPPED


@dataclass
class PendingRequest:
    kind: RequestKind
    requester_id: str
    target_id: Optional[str]
    created_at: float
    request_id: int
    force: bool = False

    def involves(self, player_id: str) -> bool:
        return player_id in (self.requester_id, self.target_id)

    def as_payload(self) -> Dict[str, object]:
        return {
            "kind": self.kind.value,
            "requester_id": self.requester_id,
            "target_id": self.target_id,
            "created_at": self.created_at,
            "force": self.force,
        }


@dataclass
class Event:
    ev: str
    data: Dict[str, object] = field(default_factory=dict)


@dataclass
class ActionResult:
    success: bool
    error: Optional[str] = None
    data: Dict[str, object] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: object) -> "ActionResult":
        return cls(success=True, data=dict(data))

    @classmethod
    def fail(cls, error: str) -> "ActionResult":
        return cls(success=False, error=error)

    def as_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"success": self.success}
        if self.error is not None:
            payload["error"] = self.error
        payload.update(self.data)
        return payload
