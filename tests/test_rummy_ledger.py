from cardtable.models import ROUND_COMPLETE, SESSION_ENDED, Phase, PlayerStatus

from .helpers import act, ledger_session, record_events


def started(players: int = 3, **config):
    session = ledger_session(players=players, **config)
    assert session.start_round().success
    return session


def scores(session):
    return {player.id: player.score for player in session.roster}


def test_recording_requires_open_round():
    session = ledger_session()
    assert session.handle_action({"type": "RECORD_POINTS", "player_id": "p1", "points": 10}).error == "Round not in progress"
    assert session.start_round().success
    assert session.phase == Phase.ACTIVE


def test_winner_collects_the_sum_of_recorded_points():
    session = started()
    events = record_events(session)
    assert act(session, "p2", "RECORD_POINTS", points=30).success
    assert act(session, "p3", "RECORD_DROP", drop_type="middle").data["penalty"] == 40

    assert act(session, "host", "RECORD_WINNER", winner_id="p1").data["collected"] == 70

    complete = [event for event in events if event.ev == ROUND_COMPLETE][0].data
    assert complete["net_changes"] == {"p1": 70, "p2": -30, "p3": -40}
    assert sum(complete["net_changes"].values()) == 0
    assert complete["is_session_over"] is False
    assert scores(session) == {"p1": 0, "p2": 30, "p3": 40}
    assert session.current_round == 2
    assert session.round_points == {"p1": 0, "p2": 0, "p3": 0}
    assert session.phase == Phase.ACTIVE


def test_winner_cannot_have_points_this_round():
    session = started()
    assert act(session, "p1", "RECORD_POINTS", points=5).success
    assert act(session, "host", "RECORD_WINNER", winner_id="p1").error == "Winner already has points this round"


def test_points_above_target_eliminate_and_reset_round_restores():
    session = started(target_score=100)
    assert act(session, "p2", "RECORD_POINTS", points=60).success
    assert act(session, "host", "RECORD_WINNER", winner_id="p1").success

    assert act(session, "p2", "RECORD_POINTS", points=45).data["eliminated"] is True
    assert session.roster[1].status == PlayerStatus.ELIMINATED
    assert act(session, "p2", "RECORD_POINTS", points=5).error == "Player is eliminated"

    assert act(session, "host", "RESET_ROUND").success
    assert session.roster[1].status == PlayerStatus.PLAYING
    assert scores(session)["p2"] == 60


def test_drop_types_and_bad_input_are_rejected():
    session = started()
    assert act(session, "p1", "RECORD_DROP").data["penalty"] == 20
    assert act(session, "p1", "RECORD_DROP", drop_type="sideways").error == "Unknown drop type: sideways"
    assert act(session, "p1", "RECORD_POINTS", points=-3).error == "points cannot be negative"
    assert act(session, "p1", "RECORD_POINTS", points="many").error == "points must be a whole number"
    assert act(session, "p9", "RECORD_POINTS", points=3).error == "Player not found"


def test_manual_elimination_down_to_one_player_ends_session():
    session = started()
    events = record_events(session)
    assert act(session, "p2", "ELIMINATE_PLAYER").success
    assert session.is_active
    assert act(session, "p3", "ELIMINATE_PLAYER").success

    assert session.phase == Phase.ENDED
    assert events[-1].ev == SESSION_ENDED
    assert events[-1].data["winner"]["id"] == "p1"
    assert events[-1].data["reason"] == "LAST_PLAYER_STANDING"


def test_round_limit_ends_ledger():
    session = started(limit_type="rounds", total_rounds=1)
    assert act(session, "p2", "RECORD_POINTS", points=12).success
    assert act(session, "host", "RECORD_WINNER", winner_id="p3").success
    assert session.phase == Phase.ENDED
    assert session.last_result["is_session_over"] is True
