from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .models import (
    LIMIT_POINTS,
    ROUND_COMPLETE,
    ActionRejected,
    LedgerAction,
    LedgerConfig,
    Phase,
    PlayerStatus,
    RosterPlayer,
)
from .session import SessionMachine

LOGGER = logging.getLogger("cardtable.rummy_ledger")

DROP_TYPES = {"initial": "first_drop_penalty", "first": "first_drop_penalty", "middle": "middle_drop_penalty"}


class RummyLedgerSession(SessionMachine):
    """Score keeping for a rummy game played with physical cards.

    The operator records each player's points as the round is settled at the
    table; no cards are dealt and there is no turn order. Rounds roll over on
    RECORD_WINNER until the limit is hit or one player is left standing.
    """

    game_type = "rummy-ledger"
    round_noun = "Round"

    def __init__(self, config: LedgerConfig, scheduler=None, subscribers=None) -> None:
        super().__init__(config, scheduler=scheduler, subscribers=subscribers)
        self.config: LedgerConfig = config
        self.round_points: Dict[str, int] = {}
        self.round_eliminated: List[str] = []
        self.last_result: Optional[Dict[str, object]] = None

    def action_types(self) -> List[str]:
        return [action.value for action in LedgerAction]

    def eligible_players(self) -> List[RosterPlayer]:
        return [player for player in self.roster if player.name and not player.is_eliminated]

    def _begin_round(self) -> None:
        self._open_ledger_round()

    def _open_ledger_round(self) -> None:
        self.round_points = {player.id: 0 for player in self.eligible_players()}
        self.round_eliminated = []
        self.phase = Phase.ACTIVE
        self.log.append(f"Round {self.current_round} open")

    def _member(self, action: Mapping[str, Any], key: str = "player_id") -> RosterPlayer:
        if self.phase != Phase.ACTIVE:
            raise ActionRejected("Round not in progress")
        player_id = action.get(key)
        if not player_id:
            raise ActionRejected(f"{key} required")
        player = self._roster_player(str(player_id))
        if player is None:
            raise ActionRejected("Player not found")
        if player.is_eliminated:
            raise ActionRejected("Player is eliminated")
        return player

    def _add_points(self, player: RosterPlayer, points: int) -> bool:
        self.round_points[player.id] = self.round_points.get(player.id, 0) + points
        player.score += points
        if self.config.limit_type == LIMIT_POINTS and player.score > self.config.target_score:
            player.status = PlayerStatus.ELIMINATED
            self.round_eliminated.append(player.id)
            self.log.append(f"{player.name} is out with {player.score} points")
            LOGGER.info("Session %s eliminated %s (%s points)", self.session_id, player.id, player.score)
            return True
        return False

    def _playing(self) -> List[RosterPlayer]:
        return [player for player in self.roster if not player.is_eliminated]

    def _on_record_points(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._member(action)
        try:
            points = int(action.get("points"))
        except (TypeError, ValueError):
            raise ActionRejected("points must be a whole number") from None
        if points < 0:
            raise ActionRejected("points cannot be negative")
        eliminated = self._add_points(player, points)
        self.log.append(f"{player.name} +{points} ({player.score})")
        return {"score": player.score, "eliminated": eliminated}

    def _on_record_drop(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._member(action)
        drop_type = str(action.get("drop_type") or "initial").lower()
        if drop_type not in DROP_TYPES:
            raise ActionRejected(f"Unknown drop type: {drop_type}")
        penalty = getattr(self.config, DROP_TYPES[drop_type])
        eliminated = self._add_points(player, penalty)
        self.log.append(f"{player.name} drops ({drop_type}) +{penalty}")
        return {"penalty": penalty, "score": player.score, "eliminated": eliminated}

    def _on_record_winner(self, action: Mapping[str, Any]) -> Dict[str, object]:
        winner = self._member(action, key="winner_id")
        if self.round_points.get(winner.id):
            raise ActionRejected("Winner already has points this round")

        scores = dict(self.round_points)
        scores.setdefault(winner.id, 0)
        collected = sum(points for player_id, points in scores.items() if player_id != winner.id)
        net_changes = {player_id: -points for player_id, points in scores.items()}
        net_changes[winner.id] = collected
        for player in self.roster:
            if player.id in net_changes:
                player.balance += net_changes[player.id]

        played_round = self.current_round
        self.current_round += 1
        playing = self._playing()
        is_over = len(playing) <= 1 or self._round_limit_reached()
        self.last_result = {
            "round": played_round,
            "winner": {"id": winner.id, "name": winner.name},
            "scores": scores,
            "net_changes": net_changes,
            "leaderboard": self.standings(),
            "eliminated": list(self.round_eliminated),
            "is_session_over": is_over,
            "current_round": self.current_round,
        }
        self.log.append(f"Round {played_round}: {winner.name} wins and collects {collected}")
        self._record_round(played_round, winner, scores=dict(scores), net_changes=dict(net_changes))
        self._queue_event(ROUND_COMPLETE, dict(self.last_result))
        if is_over:
            self._finish_session(reason="LIMIT_REACHED", winner=self._leader())
        else:
            self._open_ledger_round()
        return {"collected": collected}

    def _on_eliminate_player(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._member(action)
        player.status = PlayerStatus.ELIMINATED
        self.log.append(f"{player.name} eliminated by the operator")
        LOGGER.info("Session %s eliminated %s manually", self.session_id, player.id)
        if len(self._playing()) <= 1:
            self._finish_session(reason="LAST_PLAYER_STANDING", winner=self._leader())
        return {"player_id": player.id}

    def _on_reset_round(self, action: Mapping[str, Any]) -> Dict[str, object]:
        if self.phase != Phase.ACTIVE:
            raise ActionRejected("Round not in progress")
        for player in self.roster:
            player.score -= self.round_points.get(player.id, 0)
            if player.id in self.round_eliminated:
                player.status = PlayerStatus.PLAYING
        self.round_points = {player.id: 0 for player in self.eligible_players()}
        self.round_eliminated = []
        self.log.append(f"Round {self.current_round} reset")
        return {}

    def _leader(self) -> Optional[RosterPlayer]:
        candidates = self._playing() or self.roster
        if not candidates:
            return None
        return min(candidates, key=lambda p: (p.score, p.seat))

    def standings(self) -> List[Dict[str, object]]:
        ordered = sorted(self.roster, key=lambda p: (p.score, p.seat))
        return [player.as_payload() for player in ordered]

    def get_public_state(self) -> Dict[str, object]:
        state = self._base_state()
        state.update(
            {
                "round_points": dict(self.round_points),
                "leaderboard": self.standings(),
                "last_result": self.last_result,
            }
        )
        return state

    def _private_state(self) -> Dict[str, object]:
        return {
            "round_points": dict(self.round_points),
            "round_eliminated": list(self.round_eliminated),
            "last_result": self.last_result,
        }

    def _restore_private(self, snapshot: Mapping[str, Any]) -> None:
        self.round_points = {str(key): int(value) for key, value in (snapshot.get("round_points") or {}).items()}
        self.round_eliminated = list(snapshot.get("round_eliminated") or [])
        self.last_result = snapshot.get("last_result")
