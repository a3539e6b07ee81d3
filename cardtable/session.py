from __future__ import annotations

import logging
import random
from dataclasses import asdict, fields
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .cards import cards_to_labels, parse_cards
from .models import (
    LIMIT_POINTS,
    LIMIT_ROUNDS,
    SESSION_ENDED,
    STATE_CHANGE,
    ActionRejected,
    ActionResult,
    Event,
    PendingRequest,
    Phase,
    PlayerStatus,
    RequestKind,
    RosterPlayer,
    SessionConfig,
    _snake,
)
from .timers import ManualScheduler, RequestTimers

LOGGER = logging.getLogger("cardtable")

# A session owns all of its mutable state and performs no locking. Callers
# must dispatch one action at a time per session; distinct sessions are
# independent.

Subscriber = Callable[[Event], None]

HISTORY_LIMIT = 500


def next_active_index(players: Sequence[Any], start: int) -> Optional[int]:
    """Index of the first player after ``start`` (circular) who is still in.

    Returns ``start`` itself when it is the only one left, and None when
    nobody is in.
    """
    count = len(players)
    if count == 0:
        return None
    for step in range(1, count + 1):
        idx = (start + step) % count
        if not players[idx].is_out:
            return idx
    return None


def normalize_action(action: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten ``{type, payload}`` envelopes and snake_case the keys."""
    flat: Dict[str, Any] = {}
    payload = action.get("payload")
    if isinstance(payload, Mapping):
        for key, value in payload.items():
            flat[_snake(key)] = value
    for key, value in action.items():
        if key == "payload":
            continue
        flat[_snake(key)] = value
    action_type = flat.get("type")
    flat["type"] = str(action_type).strip().upper() if action_type is not None else ""
    if flat.get("player_id") is not None:
        flat["player_id"] = str(flat["player_id"])
    return flat


class SessionMachine:
    """State shared by every game variant: roster, events, requests, log."""

    game_type = "base"
    round_noun = "Round"
    cancel_actions: Dict[RequestKind, str] = {}
    min_players = 2
    player_class: Optional[type] = None

    def __init__(
        self,
        config: SessionConfig,
        scheduler=None,
        subscribers: Optional[List[Subscriber]] = None,
    ) -> None:
        config.validate()
        self.config = config
        self.session_id = config.session_id
        self.session_name = config.session_name
        self.scheduler = scheduler or ManualScheduler()
        self.timers = RequestTimers(self.scheduler)
        self.rng = random.Random(config.seed)
        self.phase = Phase.SETUP
        self.current_round = 1
        self.is_active = True
        self.roster: List[RosterPlayer] = []
        self.round_players: List[Any] = []
        self.current_index = 0
        self.log: List[str] = []
        self.history: List[Dict[str, object]] = []
        self.round_history: List[Dict[str, object]] = []
        self.pending: Dict[RequestKind, PendingRequest] = {}
        self._request_seq = 0
        self._subscribers: List[Subscriber] = list(subscribers or [])
        self._outbox: List[Event] = []
        self._ended_emitted = False
        # request_id of the request whose timer is firing, set only by _expire.
        self._expiring: Optional[int] = None
        LOGGER.info("Created %s session %s (%s)", self.game_type, self.session_name or self.session_id, config.limit_type)

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _queue_event(self, ev: str, data: Dict[str, object]) -> None:
        self._outbox.append(Event(ev, data))

    def _publish(self, event: Event) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                LOGGER.exception("Subscriber failed on %s for session %s", event.ev, self.session_id)

    def _flush(self, changed: bool = True) -> None:
        # state_change first, then whatever the transition queued (hand/round/session events).
        queued, self._outbox = self._outbox, []
        if changed:
            self._publish(Event(STATE_CHANGE, self.get_public_state()))
        for event in queued:
            self._publish(event)

    def set_players(self, players: Sequence[Mapping[str, Any]]) -> bool:
        if self.phase != Phase.SETUP:
            return False
        roster = [RosterPlayer.from_dict(raw, default_seat=idx + 1) for idx, raw in enumerate(players)]
        if len({player.id for player in roster}) != len(roster):
            raise ValueError("Duplicate player id in roster")
        self.roster = roster
        LOGGER.info("Session %s roster set with %s players", self.session_id, len(roster))
        return True

    def add_player(self, player: Mapping[str, Any]) -> bool:
        if self.phase != Phase.SETUP:
            return False
        new_player = RosterPlayer.from_dict(player, default_seat=len(self.roster) + 1)
        if self._roster_player(new_player.id) is not None:
            return False
        max_players = getattr(self.config, "max_players", None)
        if max_players is not None and len(self.roster) >= max_players:
            return False
        self.roster.append(new_player)
        return True

    def remove_player(self, player_id: str) -> bool:
        if self.phase != Phase.SETUP:
            return False
        before = len(self.roster)
        self.roster = [player for player in self.roster if player.id != str(player_id)]
        return len(self.roster) != before

    def _roster_player(self, player_id: str) -> Optional[RosterPlayer]:
        for player in self.roster:
            if player.id == player_id:
                return player
        return None

    def eligible_players(self) -> List[RosterPlayer]:
        return [player for player in self.roster if player.name]

    def start_round(self) -> ActionResult:
        try:
            self._check_can_start()
            self._begin_round()
        except ActionRejected as exc:
            LOGGER.debug("Session %s start_round rejected: %s", self.session_id, exc)
            self._outbox.clear()
            return ActionResult.fail(str(exc))
        LOGGER.info("Session %s %s %s started", self.session_id, self.round_noun.lower(), self.current_round)
        self._flush()
        return ActionResult.ok(round=self.current_round)

    def _check_can_start(self) -> None:
        if self.phase == Phase.ENDED or not self.is_active:
            raise ActionRejected("Session complete")
        if self.phase not in (Phase.SETUP, Phase.SHOWDOWN) or self.pending:
            raise ActionRejected(f"{self.round_noun} already in progress")
        if self._round_limit_reached():
            # Reaching the limit here flags the session inactive even though the call fails.
            self.is_active = False
            raise ActionRejected("Session complete")
        if len(self.eligible_players()) < self.min_players:
            raise ActionRejected("Not enough players")

    def _round_limit_reached(self) -> bool:
        return self.config.limit_type == LIMIT_ROUNDS and self.current_round > self.config.total_rounds

    def _begin_round(self) -> None:
        raise NotImplementedError

    def handle_action(self, action: Mapping[str, Any]) -> ActionResult:
        """Single entry point for gameplay actions. Never raises for rule violations."""
        try:
            normalized = normalize_action(action)
        except (AttributeError, TypeError):
            return ActionResult.fail("Malformed action")
        action_type = normalized["type"]
        handler = getattr(self, f"_on_{action_type.lower()}", None) if action_type else None
        if handler is None or action_type not in self.action_types():
            return ActionResult.fail("Invalid action")
        if self.phase == Phase.ENDED or not self.is_active:
            return ActionResult.fail("Session complete")

        try:
            data = handler(normalized) or {}
        except ActionRejected as exc:
            LOGGER.debug(
                "Rejected action session=%s type=%s player=%s reason=%s",
                self.session_id,
                action_type,
                normalized.get("player_id"),
                exc,
            )
            self._outbox.clear()
            return ActionResult.fail(str(exc))

        self.history.append({"round": self.current_round, **normalized})
        del self.history[:-HISTORY_LIMIT]
        self._flush()
        return ActionResult.ok(**data)

    def action_types(self) -> List[str]:
        return []

    def _player_id(self, action: Mapping[str, Any]) -> str:
        player_id = action.get("player_id")
        if not player_id:
            raise ActionRejected("player_id required")
        return player_id

    @property
    def current_player(self):
        if not self.round_players:
            return None
        return self.round_players[self.current_index]

    def _round_player(self, player_id: str):
        for player in self.round_players:
            if player.id == player_id:
                return player
        raise ActionRejected("Player not found")

    def _index_of(self, player_id: str) -> int:
        for idx, player in enumerate(self.round_players):
            if player.id == player_id:
                return idx
        raise ActionRejected("Player not found")

    def _require_turn(self, player_id: str) -> None:
        current = self.current_player
        if current is None or current.id != player_id:
            raise ActionRejected("Not your turn")

    def _advance_turn(self, from_index: Optional[int] = None) -> None:
        start = self.current_index if from_index is None else from_index
        nxt = next_active_index(self.round_players, start)
        if nxt is not None:
            self.current_index = nxt

    def active_round_players(self) -> List[Any]:
        return [player for player in self.round_players if not player.is_out]

    def _require_no_pending(self) -> None:
        if self.pending:
            kind = next(iter(self.pending))
            raise ActionRejected(f"{kind.value.replace('_', ' ').title()} request pending")

    def _open_request(
        self,
        kind: RequestKind,
        requester_id: str,
        target_id: Optional[str],
        force: bool = False,
    ) -> PendingRequest:
        if kind in self.pending:
            raise ActionRejected(f"{kind.value.replace('_', ' ').title()} request already pending")
        self._request_seq += 1
        request = PendingRequest(
            kind=kind,
            requester_id=requester_id,
            target_id=target_id,
            created_at=self.scheduler.time(),
            request_id=self._request_seq,
            force=force,
        )
        self.pending[kind] = request
        self._arm_timer(request)
        return request

    def _arm_timer(self, request: PendingRequest) -> None:
        kind, request_id = request.kind, request.request_id
        self.timers.start(kind.value, self.config.request_timeout, lambda: self._expire(kind, request_id))

    def _expire(self, kind: RequestKind, request_id: int) -> None:
        request = self.pending.get(kind)
        if request is None or request.request_id != request_id:
            return
        LOGGER.info("Session %s %s request %s timed out", self.session_id, kind.value, request_id)
        # The timeout authority lives on the machine, never in the action dict.
        self._expiring = request_id
        try:
            self.handle_action(
                {
                    "type": self.cancel_actions[kind],
                    "player_id": request.requester_id,
                    "reason": "timeout",
                    "request_id": request_id,
                }
            )
        finally:
            self._expiring = None

    def _timed_out(self, request: PendingRequest) -> bool:
        return self._expiring is not None and self._expiring == request.request_id

    def _cancel_reason(self, request: PendingRequest, action: Mapping[str, Any], default: str) -> str:
        if self._timed_out(request):
            return "timeout"
        reason = str(action.get("reason") or default)
        return default if reason == "timeout" else reason

    def _pending_for(
        self,
        kind: RequestKind,
        action: Mapping[str, Any],
        open_to: Sequence[str] = (),
    ) -> PendingRequest:
        request = self.pending.get(kind)
        if request is None:
            raise ActionRejected(f"No {kind.value.replace('_', ' ').lower()} request pending")
        request_id = action.get("request_id")
        if request_id is not None and request_id != request.request_id:
            raise ActionRejected("Request no longer pending")
        player_id = self._player_id(action)
        answerable = (
            self._timed_out(request)
            or request.involves(player_id)
            or player_id in open_to
            or action.get("host") is True
        )
        if not answerable:
            raise ActionRejected("Only the players in the request may answer it")
        return request

    def _close_request(self, kind: RequestKind) -> Optional[PendingRequest]:
        self.timers.cancel(kind.value)
        return self.pending.pop(kind, None)

    def end_session(self, reason: str = "OPERATOR_ENDED") -> Dict[str, object]:
        if self._ended_emitted:
            return self.get_public_state()
        self.timers.cancel_all()
        self.pending.clear()
        self._finish_session(reason=reason, winner=None)
        self._flush()
        return self.get_public_state()

    def _finish_session(self, reason: str, winner: Optional[RosterPlayer]) -> None:
        self.is_active = False
        self.phase = Phase.ENDED
        self.timers.cancel_all()
        if self._ended_emitted:
            return
        self._ended_emitted = True
        self.log.append(f"Session ended ({reason})")
        LOGGER.info("Session %s ended: %s", self.session_id, reason)
        self._queue_event(
            SESSION_ENDED,
            {
                "session_id": self.session_id,
                "session_name": self.session_name,
                "reason": reason,
                "final_round": self.current_round - 1,
                "limit_type": self.config.limit_type,
                "total_rounds": self.config.total_rounds,
                "target_score": self.config.target_score,
                "winner": {"id": winner.id, "name": winner.name} if winner else None,
                "standings": self.standings(),
                "round_history": [dict(entry) for entry in self.round_history],
            },
        )

    def _record_round(self, round_no: int, winner, **results: object) -> None:
        self.round_history.append(
            {
                "round": round_no,
                "winner": {"id": winner.id, "name": winner.name} if winner else None,
                **results,
            }
        )

    def standings(self) -> List[Dict[str, object]]:
        return [player.as_payload() for player in self.roster]

    def _base_state(self) -> Dict[str, object]:
        state: Dict[str, object] = {
            "session_id": self.session_id,
            "session_name": self.session_name,
            "game_type": self.game_type,
            "phase": self.phase.value,
            "current_round": self.current_round,
            "limit_type": self.config.limit_type,
            "is_active": self.is_active,
            "players": [player.as_payload() for player in self.roster],
            "pending_requests": [request.as_payload() for request in self.pending.values()],
            "log": list(self.log),
        }
        if self.config.limit_type == LIMIT_POINTS:
            state["target_score"] = self.config.target_score
        else:
            state["total_rounds"] = self.config.total_rounds
        return state

    def get_public_state(self) -> Dict[str, object]:
        return self._base_state()

    def get_player_hand(self, player_id: str) -> Optional[Dict[str, object]]:
        for player in self.round_players:
            if player.id == str(player_id):
                return {"player_id": player.id, "hand": [card.label for card in player.hand]}
        return None

    def serialize(self) -> Dict[str, object]:
        """JSON-safe snapshot, private cards included, for an external store."""
        version, internal, gauss_next = self.rng.getstate()
        snapshot: Dict[str, object] = {
            "game_type": self.game_type,
            "config": asdict(self.config),
            "state": self.get_public_state(),
            "phase": self.phase.value,
            "current_round": self.current_round,
            "current_index": self.current_index,
            "is_active": self.is_active,
            "ended": self._ended_emitted,
            "roster": [player.as_payload() for player in self.roster],
            "round_players": [self._player_snapshot(player) for player in self.round_players],
            "hands": {player.id: cards_to_labels(player.hand) for player in self.round_players},
            "pending": [
                {**asdict(request), "kind": request.kind.value} for request in self.pending.values()
            ],
            "request_seq": self._request_seq,
            "rng_state": [version, list(internal), gauss_next],
            "log": list(self.log),
            "history": [dict(entry) for entry in self.history],
            "round_history": [dict(entry) for entry in self.round_history],
        }
        snapshot.update(self._private_state())
        return snapshot

    def _player_snapshot(self, player: Any) -> Dict[str, object]:
        data = {f.name: getattr(player, f.name) for f in fields(player)}
        data["hand"] = cards_to_labels(player.hand)
        data["status"] = player.status.value
        return data

    def _private_state(self) -> Dict[str, object]:
        return {}

    def restore(self, snapshot: Mapping[str, Any]) -> None:
        """Load a snapshot produced by ``serialize`` into a fresh session.

        Subscribers are not notified. Pending requests get a full timeout again.
        """
        if snapshot.get("game_type") != self.game_type:
            raise ValueError(f"Snapshot is for {snapshot.get('game_type')!r}, not {self.game_type!r}")
        self.timers.cancel_all()
        self.roster = []
        for idx, raw in enumerate(snapshot.get("roster") or []):
            player = RosterPlayer.from_dict(raw, default_seat=idx + 1)
            player.status = PlayerStatus(raw.get("status") or PlayerStatus.PLAYING.value)
            self.roster.append(player)
        self.round_players = []
        for raw in snapshot.get("round_players") or []:
            values = dict(raw)
            values["hand"] = parse_cards(values.get("hand") or [])
            values["status"] = PlayerStatus(values["status"])
            self.round_players.append(self.player_class(**values))

        self.phase = Phase(snapshot["phase"])
        self.current_round = int(snapshot["current_round"])
        self.current_index = int(snapshot.get("current_index") or 0)
        self.is_active = bool(snapshot.get("is_active", True))
        self._ended_emitted = bool(snapshot.get("ended", False))
        self._request_seq = int(snapshot.get("request_seq") or 0)
        rng_state = snapshot.get("rng_state")
        if rng_state:
            self.rng.setstate((rng_state[0], tuple(rng_state[1]), rng_state[2]))
        self.log = list(snapshot.get("log") or [])
        self.history = [dict(entry) for entry in snapshot.get("history") or []]
        self.round_history = [dict(entry) for entry in snapshot.get("round_history") or []]
        self._restore_private(snapshot)

        self.pending = {}
        for raw in snapshot.get("pending") or []:
            request = PendingRequest(
                kind=RequestKind(raw["kind"]),
                requester_id=raw["requester_id"],
                target_id=raw.get("target_id"),
                created_at=float(raw.get("created_at") or self.scheduler.time()),
                request_id=int(raw["request_id"]),
                force=bool(raw.get("force")),
            )
            self.pending[request.kind] = request
            if self.is_active:
                self._arm_timer(request)
        LOGGER.info("Session %s restored at %s %s (%s)", self.session_id, self.round_noun.lower(), self.current_round, self.phase.value)

    def _restore_private(self, snapshot: Mapping[str, Any]) -> None:
        pass
