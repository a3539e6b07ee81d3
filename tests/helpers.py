from __future__ import annotations

from typing import Callable, List, Sequence

from cardtable.cards import Card, parse_cards
from cardtable.models import ActionResult, Event, LedgerConfig, RummyConfig, TeenPattiConfig
from cardtable.rummy import RummySession
from cardtable.rummy_ledger import RummyLedgerSession
from cardtable.teen_patti import TeenPattiSession


def make_players(count: int = 3) -> List[dict]:
    return [{"id": f"p{idx}", "name": f"Player{idx}", "seat": idx} for idx in range(1, count + 1)]


def teen_patti_session(players: int = 3, **config) -> TeenPattiSession:
    """Instantiate a Teen Patti session with a populated roster."""
    session = TeenPattiSession(TeenPattiConfig.from_dict(config, session_id="TP-1", session_name="Test table"))
    session.set_players(make_players(players))
    return session


def rummy_session(players: int = 2, **config) -> RummySession:
    session = RummySession(RummyConfig.from_dict(config, session_id="RM-1", session_name="Test rummy"))
    session.set_players(make_players(players))
    return session


def ledger_session(players: int = 3, **config) -> RummyLedgerSession:
    session = RummyLedgerSession(LedgerConfig.from_dict(config, session_id="LG-1", session_name="Score sheet"))
    session.set_players(make_players(players))
    return session


def record_events(session) -> List[Event]:
    events: List[Event] = []
    session.subscribe(events.append)
    return events


def act(session, player_id: str, action_type: str, **payload) -> ActionResult:
    return session.handle_action({"type": action_type, "player_id": player_id, "payload": payload})


def stacked_shuffle(front_labels: Sequence[str]) -> Callable:
    """Replacement for ``shuffle`` that puts the given cards on top, rest in build order."""
    front = parse_cards(front_labels)

    def fake_shuffle(deck: Sequence[Card], rng=None) -> List[Card]:
        cards = list(deck)
        top = [card for card in front if card in cards]
        return top + [card for card in cards if card not in top]

    return fake_shuffle
