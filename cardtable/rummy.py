from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .cards import Card, build_deck, cards_to_labels, deal, parse_cards, parse_label, shuffle
from .melds import arrange_hand, hand_points, has_pure_sequence
from .models import (
    LIMIT_POINTS,
    ROUND_COMPLETE,
    ActionRejected,
    Phase,
    PlayerStatus,
    RequestKind,
    RummyAction,
    RummyConfig,
    RummyPlayer,
)
from .session import SessionMachine, next_active_index

LOGGER = logging.getLogger("cardtable.rummy")

DRAW_SOURCES = ("draw", "discard")


class RummySession(SessionMachine):
    """13-card points rummy with a closed joker, drops and adjudicated declarations."""

    game_type = "rummy"
    round_noun = "Round"
    player_class = RummyPlayer
    cancel_actions = {RequestKind.DECLARE: RummyAction.DECLARE_CANCEL.value}

    def __init__(self, config: RummyConfig, scheduler=None, subscribers=None) -> None:
        super().__init__(config, scheduler=scheduler, subscribers=subscribers)
        self.config: RummyConfig = config
        self.round_players: List[RummyPlayer] = []
        self.draw_pile: List[Card] = []
        self.discard_pile: List[Card] = []
        self.closed_joker: Optional[Card] = None
        self.wild_rank: Optional[str] = None
        self.declaration: Optional[Dict[str, object]] = None
        self.last_result: Optional[Dict[str, object]] = None

    def action_types(self) -> List[str]:
        return [action.value for action in RummyAction]

    def eligible_players(self):
        return [player for player in self.roster if player.name and not player.is_eliminated]

    def _begin_round(self) -> None:
        players = self.eligible_players()
        decks = 2 if len(players) > 3 else 1
        deck = shuffle(build_deck(include_jokers=True, decks=decks), self.rng)
        hand_size = self.config.hand_size
        if len(players) * hand_size + 1 > len(deck):
            raise ActionRejected("Too many players for the deck")

        self.round_players = [
            RummyPlayer(id=player.id, name=player.name, seat=player.seat, hand=deal(deck, hand_size))
            for player in players
        ]
        self.closed_joker = deal(deck, 1)[0]
        self.wild_rank = "A" if self.closed_joker.is_printed_joker else self.closed_joker.rank
        self.draw_pile = deck
        self.discard_pile = []
        self.declaration = None
        self.last_result = None
        self.pending.clear()
        self.timers.cancel_all()
        self.current_index = (self.current_round - 1) % len(self.round_players)
        self.phase = Phase.DROP_PHASE
        self.log = [
            f"Round {self.current_round} started with {len(self.round_players)} players and {decks} deck(s)",
        ]

    def _require_actor(self, action: Mapping[str, Any]) -> RummyPlayer:
        if self.phase not in (Phase.DROP_PHASE, Phase.PLAY):
            raise ActionRejected("Round not in progress")
        self._require_no_pending()
        player_id = self._player_id(action)
        player = self._round_player(player_id)
        self._require_turn(player_id)
        if player.is_out:
            raise ActionRejected("Player has dropped")
        return player

    def _find_card(self, player: RummyPlayer, card_id: Any) -> Card:
        if not card_id:
            raise ActionRejected("card_id required")
        wanted = str(card_id).strip().upper()
        for card in player.hand:
            if card.id.upper() == wanted:
                return card
        raise ActionRejected("Card not in hand")

    def _maybe_open_play(self) -> None:
        if self.phase != Phase.DROP_PHASE:
            return
        if all(player.has_drawn or player.is_out for player in self.round_players):
            self.phase = Phase.PLAY
            self.log.append("Everyone is committed; drops now cost the middle penalty")

    def _refill_draw_pile(self) -> None:
        if len(self.discard_pile) <= 1:
            raise ActionRejected("No cards left to draw")
        top = self.discard_pile[-1]
        self.draw_pile = shuffle(self.discard_pile[:-1], self.rng)
        self.discard_pile = [top]
        self.log.append("Draw pile reshuffled from the discards")
        LOGGER.info("Session %s reshuffled %s discards", self.session_id, len(self.draw_pile))

    def _hand_points(self, player: RummyPlayer) -> int:
        return hand_points(player.hand, self.wild_rank, cap=self.config.max_hand_points)

    def _on_drop_player(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        penalty = self.config.middle_drop_penalty if player.has_drawn else self.config.first_drop_penalty
        player.status = PlayerStatus.DROPPED
        player.round_score = penalty
        player.drawn_this_turn = False
        self.log.append(f"{player.name} drops for {penalty} points")

        remaining = self.active_round_players()
        if not remaining:
            self._end_round(None)
        elif len(remaining) == 1:
            remaining[0].round_score = 0
            self.log.append(f"{remaining[0].name} wins by default")
            self._end_round(remaining[0])
        else:
            self._advance_turn()
            self._maybe_open_play()
        return {"penalty": penalty}

    def _on_draw_card(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        if player.drawn_this_turn:
            raise ActionRejected("Already drew this turn")
        source = str(action.get("source") or "draw").lower()
        if source not in DRAW_SOURCES:
            raise ActionRejected(f"Unknown draw source: {source}")

        if source == "discard":
            if not self.discard_pile:
                raise ActionRejected("Discard pile is empty")
            card = self.discard_pile.pop()
        else:
            if not self.draw_pile:
                self._refill_draw_pile()
            card = deal(self.draw_pile, 1)[0]

        player.hand.append(card)
        player.has_drawn = True
        player.drawn_this_turn = True
        if source == "discard":
            self.log.append(f"{player.name} picks up {card.label} from the discards")
        else:
            self.log.append(f"{player.name} draws from the pile")
        self._maybe_open_play()
        return {"card": card.label, "source": source}

    def _on_discard_card(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        if not player.drawn_this_turn:
            raise ActionRejected("Draw a card first")
        card = self._find_card(player, action.get("card_id"))
        player.hand.remove(card)
        self.discard_pile.append(card)
        player.drawn_this_turn = False
        self.log.append(f"{player.name} discards {card.label}")
        self._advance_turn()
        return {"card": card.label}

    def _on_show_closed_joker(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        if player.joker_revealed:
            raise ActionRejected("Joker already revealed")
        if not has_pure_sequence(player.hand, self.wild_rank):
            raise ActionRejected("A pure sequence is needed to see the joker")
        player.joker_revealed = True
        self.log.append(f"{player.name} looks at the closed joker")
        return {"closed_joker": self.closed_joker.label, "wild_rank": self.wild_rank}

    def _on_declare_rummy(self, action: Mapping[str, Any]) -> Dict[str, object]:
        player = self._require_actor(action)
        if not player.drawn_this_turn:
            raise ActionRejected("Draw a card first")
        if len(player.hand) != self.config.hand_size + 1:
            raise ActionRejected(f"A declaration needs {self.config.hand_size} cards after the finishing card")
        if not action.get("card_id"):
            raise ActionRejected("Name the card to finish with")
        finish_card = self._find_card(player, action.get("card_id"))

        kept = [card for card in player.hand if card is not finish_card]
        arrangement = arrange_hand(kept, self.wild_rank)
        request = self._open_request(RequestKind.DECLARE, player.id, None)

        player.hand = kept
        self.discard_pile.append(finish_card)
        player.drawn_this_turn = False
        self.declaration = {
            "declarer_id": player.id,
            "finish_card": finish_card.label,
            "phase": self.phase.value,
            "has_pure_sequence": arrangement.has_pure_sequence,
            "deadwood": arrangement.deadwood,
            "arrangement": arrangement.as_payload(),
        }
        self.phase = Phase.SHOWDOWN
        self.log.append(f"{player.name} declares rummy")
        return {
            "request_id": request.request_id,
            "has_pure_sequence": arrangement.has_pure_sequence,
            "deadwood": arrangement.deadwood,
        }

    def _on_resolve_declare(self, action: Mapping[str, Any]) -> Dict[str, object]:
        seated = [player.id for player in self.active_round_players()]
        request = self._pending_for(RequestKind.DECLARE, action, open_to=seated)
        declarer = self._round_player(request.requester_id)
        is_valid = action.get("is_valid")
        if not isinstance(is_valid, bool):
            raise ActionRejected("is_valid must be true or false")
        if is_valid and not self.declaration["has_pure_sequence"]:
            raise ActionRejected("Declaration has no pure sequence")

        if is_valid:
            winner = declarer
        else:
            winner_id = action.get("winner_id")
            if winner_id:
                winner = self._round_player(str(winner_id))
                if winner is declarer or winner.is_out:
                    raise ActionRejected("Winner must be another player still in the round")
            else:
                winner = self.round_players[next_active_index(self.round_players, self._index_of(declarer.id))]
                if winner is declarer:
                    raise ActionRejected("No other player left to win")

        self._close_request(RequestKind.DECLARE)
        for player in self.active_round_players():
            if player is winner:
                player.round_score = 0
            elif player is declarer:
                player.round_score = self.config.wrong_show_penalty
            else:
                player.round_score = self._hand_points(player)
        self.declaration["is_valid"] = is_valid
        if is_valid:
            self.log.append(f"{declarer.name} shows a valid rummy")
        else:
            self.log.append(f"Wrong show by {declarer.name}; {winner.name} takes the round")
        self._end_round(winner)
        return {"winner_id": winner.id, "is_valid": is_valid}

    def _on_declare_cancel(self, action: Mapping[str, Any]) -> Dict[str, object]:
        seated = [player.id for player in self.active_round_players()]
        request = self._pending_for(RequestKind.DECLARE, action, open_to=seated)
        self._close_request(RequestKind.DECLARE)
        declarer = self._round_player(request.requester_id)
        reason = self._cancel_reason(request, action, "withdrawn")
        resume = self.declaration.get("phase") if self.declaration else None
        self.declaration = None
        self.phase = Phase(resume) if resume else Phase.PLAY
        # The finishing card is already on the discard pile, so the declarer's turn is over.
        self._advance_turn(self._index_of(declarer.id))
        self.log.append(f"Declaration by {declarer.name} cancelled ({reason})")
        return {"reason": reason}

    def _end_round(self, winner: Optional[RummyPlayer]) -> None:
        self.phase = Phase.SHOWDOWN
        self.timers.cancel_all()
        self.pending.clear()

        scores = {player.id: player.round_score for player in self.round_players}
        for roster_player in self.roster:
            if roster_player.id in scores:
                roster_player.score += scores[roster_player.id]

        eliminated = []
        if self.config.limit_type == LIMIT_POINTS:
            for roster_player in self.roster:
                if not roster_player.is_eliminated and roster_player.score > self.config.target_score:
                    roster_player.status = PlayerStatus.ELIMINATED
                    eliminated.append(roster_player.id)
                    self.log.append(f"{roster_player.name} is out with {roster_player.score} points")
                    LOGGER.info("Session %s eliminated %s (%s points)", self.session_id, roster_player.id, roster_player.score)

        played_round = self.current_round
        self.current_round += 1
        remaining = [player for player in self.roster if not player.is_eliminated]
        is_over = len(remaining) <= 1 or self._round_limit_reached()

        self.last_result = {
            "round": played_round,
            "winner": {"id": winner.id, "name": winner.name} if winner else None,
            "scores": scores,
            "net_changes": {player_id: -points for player_id, points in scores.items()},
            "leaderboard": self.standings(),
            "eliminated": eliminated,
            "is_session_over": is_over,
            "wild_rank": self.wild_rank,
            "closed_joker": self.closed_joker.label if self.closed_joker else None,
            "declaration": self.declaration,
            "current_round": self.current_round,
        }
        self.log.append(f"Round {played_round} over")
        LOGGER.info("Session %s round %s complete (winner=%s)", self.session_id, played_round, winner.id if winner else None)
        self._record_round(played_round, winner, scores=dict(scores))
        self._queue_event(ROUND_COMPLETE, dict(self.last_result))
        if is_over:
            leader = min(remaining or self.roster, key=lambda p: (p.score, p.seat)) if self.roster else None
            self._finish_session(reason="LIMIT_REACHED", winner=leader)

    def standings(self) -> List[Dict[str, object]]:
        ordered = sorted(self.roster, key=lambda p: (p.score, p.seat))
        return [player.as_payload() for player in ordered]

    def get_public_state(self) -> Dict[str, object]:
        state = self._base_state()
        in_play = self.phase in (Phase.DROP_PHASE, Phase.PLAY)
        current = self.current_player if in_play else None
        round_over = self.phase == Phase.ENDED or (self.phase == Phase.SHOWDOWN and not self.pending)
        declaration = None
        if self.declaration is not None:
            declaration = {
                "declarer_id": self.declaration["declarer_id"],
                "finish_card": self.declaration["finish_card"],
            }
        state.update(
            {
                "current_player_index": self.current_index,
                "current_player_id": current.id if current else None,
                "draw_pile_count": len(self.draw_pile),
                "discard_top": self.discard_pile[-1].label if self.discard_pile else None,
                "discard_count": len(self.discard_pile),
                "wild_rank": self.wild_rank if round_over else None,
                "declaration": declaration,
                "round_players": [
                    {
                        "id": player.id,
                        "name": player.name,
                        "seat": player.seat,
                        "status": player.status.value,
                        "has_drawn": player.has_drawn,
                        "card_count": len(player.hand),
                        "round_score": player.round_score,
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
        # Until the joker is revealed a hand only counts printed jokers as wild.
        visible_wild = self.wild_rank if player.joker_revealed else None
        arrangement = arrange_hand(player.hand, visible_wild).as_payload() if player.hand else None
        current = self.current_player
        can_declare = (
            self.phase in (Phase.DROP_PHASE, Phase.PLAY)
            and not self.pending
            and current is not None
            and current.id == player.id
            and player.drawn_this_turn
        )
        return {
            "player_id": player.id,
            "status": player.status.value,
            "hand": cards_to_labels(player.hand),
            "arrangement": arrangement,
            "closed_joker": self.closed_joker.label if player.joker_revealed and self.closed_joker else None,
            "wild_rank": visible_wild,
            "can_declare": can_declare,
        }

    def _private_state(self) -> Dict[str, object]:
        return {
            "draw_pile": cards_to_labels(self.draw_pile),
            "discard_pile": cards_to_labels(self.discard_pile),
            "closed_joker": self.closed_joker.label if self.closed_joker else None,
            "wild_rank": self.wild_rank,
            "declaration": self.declaration,
            "last_result": self.last_result,
        }

    def _restore_private(self, snapshot: Mapping[str, Any]) -> None:
        self.draw_pile = parse_cards(snapshot.get("draw_pile") or [])
        self.discard_pile = parse_cards(snapshot.get("discard_pile") or [])
        closed = snapshot.get("closed_joker")
        self.closed_joker = parse_label(closed) if closed else None
        self.wild_rank = snapshot.get("wild_rank")
        self.declaration = snapshot.get("declaration")
        self.last_result = snapshot.get("last_result")
