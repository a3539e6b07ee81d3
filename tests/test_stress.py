import random

from cardtable.models import HAND_COMPLETE, ROUND_COMPLETE, Phase

from .helpers import act, record_events, rummy_session, teen_patti_session


def play_teen_patti_hand(session, rng: random.Random) -> None:
    for _ in range(200):
        if session.phase != Phase.ACTIVE:
            return
        player = session.current_player
        active = session.active_round_players()
        roll = rng.random()
        if len(active) == 2 and roll < 0.2:
            assert act(session, player.id, "SHOW_REQUEST").success
            winner = rng.choice(active).id
            assert act(session, player.id, "SHOW_RESOLVE", winner_id=winner).success
        elif roll < 0.35:
            assert act(session, player.id, "FOLD").success
        elif roll < 0.5 and player.status.value == "BLIND":
            assert act(session, player.id, "SEEN").success
        else:
            assert act(session, player.id, "BET", double=roll > 0.9).success
    raise AssertionError("hand did not finish")


def test_teen_patti_hands_always_settle_zero_sum():
    rng = random.Random(99)
    session = teen_patti_session(players=5, total_rounds=300, seed=5)
    events = record_events(session)
    hands = 0
    while session.start_round().success:
        play_teen_patti_hand(session, rng)
        hands += 1

    assert hands == 300
    results = [event.data for event in events if event.ev == HAND_COMPLETE]
    assert len(results) == 300
    for result in results:
        assert sum(result["net_changes"].values()) == 0
    assert sum(player.balance for player in session.roster) == 0
    assert session.phase == Phase.ENDED


def test_rummy_rounds_with_drops_keep_cards_conserved():
    rng = random.Random(3)
    session = rummy_session(players=3, limit_type="rounds", total_rounds=40, seed=11)
    events = record_events(session)
    while session.start_round().success:
        for _ in range(500):
            if session.phase not in (Phase.DROP_PHASE, Phase.PLAY):
                break
            player = session.current_player
            if rng.random() < 0.05:
                assert act(session, player.id, "DROP_PLAYER").success
                continue
            source = "discard" if session.discard_pile and rng.random() < 0.3 else "draw"
            assert act(session, player.id, "DRAW_CARD", source=source).success
            discard = rng.choice(player.hand).id
            assert act(session, player.id, "DISCARD_CARD", card_id=discard).success
            held = sum(len(p.hand) for p in session.round_players)
            assert held + len(session.draw_pile) + len(session.discard_pile) + 1 == 54
        else:
            session.end_session()

    rounds = [event.data for event in events if event.ev == ROUND_COMPLETE]
    assert rounds
    for result in rounds:
        assert all(points in (0, 20, 40) for points in result["scores"].values())
