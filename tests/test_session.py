from dataclasses import dataclass

import pytest

from cardtable.models import STATE_CHANGE, Phase
from cardtable.session import HISTORY_LIMIT, next_active_index, normalize_action
from cardtable.timers import ManualScheduler, RequestTimers

from .helpers import act, ledger_session, record_events, teen_patti_session


@dataclass
class Seat:
    is_out: bool = False


def test_next_active_index_skips_out_players_and_wraps():
    seats = [Seat(), Seat(is_out=True), Seat(), Seat(is_out=True)]
    assert next_active_index(seats, 0) == 2
    assert next_active_index(seats, 2) == 0


def test_next_active_index_returns_sole_survivor_or_none():
    assert next_active_index([Seat(True), Seat(), Seat(True)], 1) == 1
    assert next_active_index([Seat(True), Seat(True)], 0) is None
    assert next_active_index([], 0) is None


def test_normalize_action_flattens_payload_and_snake_cases_keys():
    action = normalize_action({"type": "side_show_request", "playerId": 7, "payload": {"targetId": "p2", "requestId": 3}})
    assert action == {"type": "SIDE_SHOW_REQUEST", "player_id": "7", "target_id": "p2", "request_id": 3}


def test_malformed_actions_fail_cleanly():
    session = teen_patti_session()
    assert session.handle_action({"player_id": "p1"}).error == "Invalid action"
    assert session.handle_action({"type": "BET"}).error == "Hand not in progress"
    assert session.start_round().success
    assert session.handle_action({"type": "BET"}).error == "player_id required"


def test_roster_changes_only_allowed_in_setup():
    session = teen_patti_session(players=2)
    assert session.add_player({"id": "p3", "name": "Player3"})
    assert not session.add_player({"id": "p3", "name": "Again"})
    assert session.remove_player("p3")
    assert session.start_round().success
    assert not session.add_player({"id": "p4", "name": "Late"})
    assert not session.remove_player("p1")
    with pytest.raises(ValueError, match="Player id required"):
        teen_patti_session().set_players([{"name": "Nameless"}])


def test_unnamed_players_are_not_dealt_in():
    session = teen_patti_session(players=2)
    session.add_player({"id": "ghost"})
    assert session.start_round().success
    assert [player.id for player in session.round_players] == ["p1", "p2"]


def test_failing_subscriber_does_not_break_dispatch():
    session = teen_patti_session()
    events = record_events(session)

    def explode(event):
        raise RuntimeError("subscriber bug")

    session.subscribe(explode)
    assert session.start_round().success
    assert act(session, "p1", "BET").success
    assert [event.ev for event in events] == [STATE_CHANGE, STATE_CHANGE]


def test_unsubscribe_stops_delivery():
    session = teen_patti_session()
    events = []
    unsubscribe = session.subscribe(events.append)
    unsubscribe()
    assert session.start_round().success
    assert events == []
    assert session.phase == Phase.ACTIVE


def test_rejected_action_publishes_nothing():
    session = teen_patti_session()
    assert session.start_round().success
    events = record_events(session)
    assert not act(session, "p2", "BET").success
    assert events == []
    assert session.history == []


def test_request_timers_are_replaced_and_cancel_is_idempotent():
    scheduler = ManualScheduler()
    timers = RequestTimers(scheduler)
    fired = []
    timers.start("SHOW", 5, lambda: fired.append("first"))
    timers.start("SHOW", 5, lambda: fired.append("second"))
    assert timers.active() == ["SHOW"]
    assert scheduler.advance(5) == 1
    assert fired == ["second"]
    timers.cancel("SHOW")
    timers.cancel("SHOW")
    timers.start("SHOW", 0, lambda: fired.append("never"))
    assert timers.active() == []
    assert scheduler.pending() == 0


def test_action_history_keeps_only_the_latest_entries():
    session = ledger_session()
    assert session.start_round().success
    for _ in range(HISTORY_LIMIT + 100):
        assert act(session, "p1", "RESET_ROUND").success
    assert len(session.history) == HISTORY_LIMIT
    assert act(session, "p2", "RECORD_POINTS", points=7).success
    assert len(session.history) == HISTORY_LIMIT
    assert session.history[-1]["type"] == "RECORD_POINTS"
