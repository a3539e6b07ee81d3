from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .cards import build_deck, cards_to_labels, deal, parse_cards, shuffle
from .evaluator import HAND_SIZE, describe_rank, evaluate
from .models import (
    HAND_COMPLETE,
    LIMIT_POINTS,
    ActionRejected,
    Phase,
    PlayerStatus,
    RequestKind,
    TeenPattiAction,
    TeenPattiConfig,
    TeenPattiPlayer,
)
from .session import SessionMachine

LOGGER = logging.getLogger("cardtable.teen_patti")


class TeenPattiSession(SessionMachine):
    """Betting game over three-card hands: boot, blind/seen chaal, side shows, shows."""

    game_type = "teen-patti"
    round_noun = "Hand"
    player_class = TeenPattiPlayer
    cancel_actions = {
        RequestKind.SIDE_SHOW: TeenPattiAction.SIDE_SHOW_CANCEL.value,
        RequestKind.SHOW: TeenPattiAction.SHOW_CANCEL.value,
    }

    def __init__(self, config: TeenPattiConfig, scheduler=None, subscribers=None) -> None:
        super().__init__(config, scheduler=scheduler, subscribers=subscribers)
        self.config: TeenPattiConfig = config
        self.round_players: List[TeenPattiPlayer] = []
        self.deck = []
        self.pot = 0
        self.stake = config.initial_stake or config.boot_amount * 2
        self.hand_id: Optional[str] = None
        self.last_result: Optional[Dict[str, object]] = None

    def action_types(self) -> List[str]:
        return [action.value for action in TeenPattiAction]

    def _begin_round(self) -> None:
        players = self.eligible_players()
        deck = shuffle(build_deck(include_jokers=False), self.rng)
        if len(players) * HAND_SIZE > len(deck):
            raise ActionRejected("Too many players for one deck")

        boot = self.config.boot_amount
        self.round_players = [
            TeenPattiPlayer(
                id=player.id,
                name=player.name,
                seat=player.seat,
                hand=deal(deck, HAND_SIZE),
                invested=boot,
            )
            for player in players
        ]
        self.deck = deck
        self.pot = boot * len(self.round_players)
        self.stake = self.config.initial_stake
        # First to act moves one seat per hand.
        self.current_index = (self.current_round - 1) % len(self.round_players)
        self.pending.clear()
        self.timers.cancel_all()
        self.hand_id = f"H-{self.session_id or 'local'}-{self.current_round:05d}"
        self.phase = Phase.ACTIVE
        self.last_result = None
        self.log = [
            f"Hand {self.current_round} started. Boot {boot} from {len(self.round_players)} players, pot {self.pot}",
        ]

    def _cost(self, player: TeenPattiPlayer, stake: int) -> int:
        if player.status == PlayerStatus.BLIND:
            return max(1, stake // 2)
        return stake

    def _charge(self, player: TeenPattiPlayer, amount: int) -> None:
        player.invested += amount
        self.pot += amount

    def _require_actor(self, action: Mapping[str, Any]) -> TeenPattiPlayer:
        if self.phase != Phase.ACTIVE:
            raise ActionRejected("Hand not in progress")
        self._require_no_pending()
        player_id = self._player_id(action)
        player = self._round_player(player_id)
        self._require_turn(player_id)
        if player.folded:
            raise ActionRejected("Player has folded")
        return player

    def _target(self, action: Mapping[str, Any], requester: TeenPattiPlayer) -> TeenPattiPlayer:
        target_id = action.get("target_id")
        if not target_id:
            raise ActionRejected("target_id required")
        target_id = str(target_id)
        if target_id == requester.id:
            raise ActionRejected("Cannot target yourself")
        target = next((player for player in self.round_players if player.id == target_id), None)
        if target is None:
            raise ActionRejected("Target not found")
        if target.folded:
            raise ActionRejected("Target has folded")
        return target

    def _finish_or_advance(self, from_index: int) -> None:
        active = self.active_round_players()
        if len(active) == 1:
            self._end_hand(active[0])
        else:
            self._advance_turn(from_index)

    def _on_seen(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        if player.status != PlayerStatus.BLIND:
            raise ActionRejected("Already seen")
        player.status = PlayerStatus.SEEN
        self.log.append(f"{player.name} looked at their cards")
        return {"status": player.status.value}

    def _on_fold(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        player.folded = True
        self.log.append(f"{player.name} packed")
        self._finish_or_advance(self.current_index)
        return {}

    def _on_bet(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        base_cost = self._cost(player, self.stake)
        amount = action.get("amount")
        if amount is not None:
            try:
                amount = int(amount)
            except (TypeError, ValueError):
                raise ActionRejected("Invalid bet amount") from None
            if amount < base_cost or amount > base_cost * 2:
                raise ActionRejected(f"Bet must be between {base_cost} and {base_cost * 2}")
            cost = amount
            new_stake = amount if player.status == PlayerStatus.SEEN else amount * 2
        elif action.get("double"):
            new_stake = self.stake * 2
            cost = self._cost(player, new_stake)
        else:
            new_stake = self.stake
            cost = base_cost

        self._charge(player, cost)
        raised = new_stake > self.stake
        self.stake = new_stake
        verb = "raises" if raised else "chaals"
        self.log.append(f"{player.name} {verb} {cost} ({player.status.value.lower()}). Pot {self.pot}")
        self._advance_turn()
        return {"cost": cost, "stake": self.stake, "pot": self.pot}

    def _on_side_show_request(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        if player.status != PlayerStatus.SEEN:
            raise ActionRejected("Only SEEN players may ask for a side show")
        target = self._target(action, player)
        if target.status == PlayerStatus.BLIND:
            raise ActionRejected("Side show target must be SEEN")
        if len(self.active_round_players()) < 3:
            raise ActionRejected("Side show needs three or more players; ask for a show instead")

        cost = self._cost(player, self.stake)
        request = self._open_request(RequestKind.SIDE_SHOW, player.id, target.id)
        self._charge(player, cost)
        self.log.append(f"{player.name} asks {target.name} for a side show (paid {cost})")
        return {"request_id": request.request_id, "cost": cost}

    def _on_side_show_resolve(self, action: Mapping[str, Any]) -> Dict[str, object]:
        request = self._pending_for(RequestKind.SIDE_SHOW, action)
        winner, loser = self._winner_and_loser(action, request.requester_id, request.target_id)
        self._close_request(RequestKind.SIDE_SHOW)
        loser.folded = True
        self.log.append(f"Side show: {winner.name} beats {loser.name}")
        self._finish_or_advance(self._index_of(request.requester_id))
        return {"winner_id": winner.id, "loser_id": loser.id}

    def _on_side_show_cancel(self, action: Mapping[str, Any]) -> Dict[str, object]:
        request = self._pending_for(RequestKind.SIDE_SHOW, action)
        self._close_request(RequestKind.SIDE_SHOW)
        reason = self._cancel_reason(request, action, "declined")
        requester = self._round_player(request.requester_id)
        self.log.append(f"Side show from {requester.name} cancelled ({reason})")
        self._advance_turn(self._index_of(request.requester_id))
        return {"reason": reason}

    def _on_show_request(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        active = self.active_round_players()
        force = bool(action.get("force"))

        if force:
            if player.status != PlayerStatus.SEEN:
                raise ActionRejected("Only SEEN players may force a show")
            target = self._target(action, player)
            if target.status != PlayerStatus.BLIND:
                raise ActionRejected("Force show target must be BLIND")
            blind_left = sum(1 for other in active if other.status == PlayerStatus.BLIND)
            if blind_left > 2:
                raise ActionRejected("Force show allowed only while at most two BLIND players remain")
            cost = 0
        else:
            if len(active) != 2:
                raise ActionRejected("Show needs exactly two players left")
            target = next(other for other in active if other.id != player.id)
            cost = self._cost(player, self.stake)

        request = self._open_request(RequestKind.SHOW, player.id, target.id, force=force)
        if cost:
            self._charge(player, cost)
        kind = "force show" if force else "show"
        self.log.append(f"{player.name} asks {target.name} for a {kind}")
        return {"request_id": request.request_id, "cost": cost, "force": force}

    def _on_show_resolve(self, action: Mapping[str, Any]) -> Dict[str, object]:
        request = self._pending_for(RequestKind.SHOW, action)
        winner, loser = self._winner_and_loser(action, request.requester_id, request.target_id)
        self._close_request(RequestKind.SHOW)
        requester = self._round_player(request.requester_id)

        penalty = 0
        if request.force and loser is requester:
            penalty = self.stake * 2
            self._charge(requester, penalty)
            self.log.append(f"{requester.name} loses the force show and pays {penalty}")
        else:
            self.log.append(f"Show: {winner.name} beats {loser.name}")
        loser.folded = True

        if request.force:
            self._finish_or_advance(self._index_of(request.requester_id))
        else:
            self._end_hand(winner)
        return {"winner_id": winner.id, "loser_id": loser.id, "penalty": penalty}

    def _on_show_cancel(self, action: Mapping[str, Any]) -> Dict[str, object]:
        request = self._pending_for(RequestKind.SHOW, action)
        self._close_request(RequestKind.SHOW)
        reason = self._cancel_reason(request, action, "declined")
        requester = self._round_player(request.requester_id)
        self.log.append(f"Show from {requester.name} cancelled ({reason})")
        self._advance_turn(self._index_of(request.requester_id))
        return {"reason": reason}

    def _winner_and_loser(self, action: Mapping[str, Any], requester_id: str, target_id: Optional[str]):
        # The winner is adjudicated outside the engine; it is never auto-evaluated here.
        winner_id = action.get("winner_id")
        if winner_id is None:
            raise ActionRejected("winner_id required")
        winner_id = str(winner_id)
        if winner_id not in (requester_id, target_id):
            raise ActionRejected("Winner must be the requester or the target")
        loser_id = target_id if winner_id == requester_id else requester_id
        return self._round_player(winner_id), self._round_player(loser_id)

    def _end_hand(self, winner: TeenPattiPlayer) -> None:
        self.phase = Phase.SHOWDOWN
        self.timers.cancel_all()
        self.pending.clear()

        net_changes: Dict[str, int] = {}
        for player in self.round_players:
            if player is winner:
                net_changes[player.id] = self.pot - player.invested
            else:
                net_changes[player.id] = -player.invested
        for roster_player in self.roster:
            if roster_player.id in net_changes:
                roster_player.balance += net_changes[roster_player.id]

        hands = []
        for player in self.round_players:
            rank = evaluate(player.hand)
            hands.append(
                {
                    "player_id": player.id,
                    "name": player.name,
                    "hand": cards_to_labels(player.hand),
                    "rank": describe_rank(rank),
                    "folded": player.folded,
                    "status": player.status.value,
                }
            )

        played_round = self.current_round
        self.current_round += 1
        is_over = self._session_over()
        self.log.append(f"Hand over. {winner.name} wins pot {self.pot}")
        LOGGER.info("Session %s hand %s won by %s (pot=%s)", self.session_id, played_round, winner.id, self.pot)

        self.last_result = {
            "round": played_round,
            "hand_id": self.hand_id,
            "winner": {"id": winner.id, "name": winner.name},
            "pot": self.pot,
            "net_changes": net_changes,
            "hands": hands,
            "current_round": self.current_round,
            "is_session_over": is_over,
        }
        self._record_round(played_round, winner, pot=self.pot, net_changes=dict(net_changes))
        self._queue_event(HAND_COMPLETE, dict(self.last_result))
        if is_over:
            leader = max(self.roster, key=lambda p: p.balance) if self.roster else None
            self._finish_session(reason="LIMIT_REACHED", winner=leader)

    def _session_over(self) -> bool:
        if self.config.limit_type == LIMIT_POINTS:
            return any(player.balance >= self.config.target_score for player in self.roster)
        return self.current_round > self.config.total_rounds

    def standings(self) -> List[Dict[str, object]]:
        ordered = sorted(self.roster, key=lambda p: p.balance, reverse=True)
        return [player.as_payload() for player in ordered]

    def get_public_state(self) -> Dict[str, object]:
        state = self._base_state()
        current = self.current_player if self.phase == Phase.ACTIVE else None
        state.update(
            {
                "hand_id": self.hand_id,
                "pot": self.pot,
                "stake": self.stake,
                "boot_amount": self.config.boot_amount,
                "current_player_index": self.current_index,
                "current_player_id": current.id if current else None,
                "round_players": [
                    {
                        "id": player.id,
                        "name": player.name,
                        "seat": player.seat,
                        "status": player.status.value,
                        "folded": player.folded,
                        "invested": player.invested,
                        "card_count": len(player.hand),
                    }
                    for player in self.round_players
                ],
                "last_result": self.last_result,
            }
        )
        return state

    def get_player_hand(self, player_id: str) -> Optional[Dict[str, object]]:
        player = next((p for p in self.round_players if p.id == str(player_id)), None)
        if player is None:
            return None
        # BLIND players have not looked yet; the hand opens up at SEEN or at the showdown.
        visible = player.status == PlayerStatus.SEEN or self.phase in (Phase.SHOWDOWN, Phase.ENDED)
        return {
            "player_id": player.id,
            "status": player.status.value,
            "seen": visible,
            "hand": cards_to_labels(player.hand) if visible else [],
            "rank": describe_rank(evaluate(player.hand)) if visible else None,
            "stake_cost": self._cost(player, self.stake),
        }

    def _private_state(self) -> Dict[str, object]:
        return {
            "deck": cards_to_labels(self.deck),
            "pot": self.pot,
            "stake": self.stake,
            "hand_id": self.hand_id,
            "last_result": self.last_result,
        }

    def _restore_private(self, snapshot: Mapping[str, Any]) -> None:
        self.deck = parse_cards(snapshot.get("deck") or [])
        self.pot = int(snapshot.get("pot") or 0)
        self.stake = int(snapshot.get("stake") or self.config.initial_stake)
        self.hand_id = snapshot.get("hand_id")
        self.last_result = snapshot.get("last_result")
