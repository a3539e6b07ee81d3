import pytest

from cardtable.cards import parse_cards
from cardtable.melds import MeldKind, arrange_hand, hand_points, has_pure_sequence, is_pure_sequence, is_sequence, is_set

WINNING_HAND = ["2H", "3H", "4H", "5S", "6S", "7S", "8S", "9D", "10D", "JD", "QC", "QH", "QS"]


def test_pure_sequences_allow_ace_low_and_high_but_not_wrap():
    assert is_pure_sequence(parse_cards(["5H", "6H", "7H"]))
    assert is_pure_sequence(parse_cards(["AS", "2S", "3S"]))
    assert is_pure_sequence(parse_cards(["QS", "KS", "AS"]))
    assert not is_pure_sequence(parse_cards(["KS", "AS", "2S"]))
    assert not is_pure_sequence(parse_cards(["5H", "6H", "7D"]))
    assert not is_pure_sequence(parse_cards(["5H", "6H"]))


def test_jokers_fill_gaps_in_impure_sequences():
    assert is_sequence(parse_cards(["5H", "JOKER1", "7H"]), None)
    assert not is_pure_sequence(parse_cards(["5H", "JOKER1", "7H"]))
    assert is_sequence(parse_cards(["5H", "9C", "7H"]), "9")
    assert not is_sequence(parse_cards(["5H", "JOKER1", "8H"]), None)


def test_sets_need_distinct_suits():
    assert is_set(parse_cards(["7H", "7S", "7D"]), None)
    assert is_set(parse_cards(["7H", "7S", "JOKER1"]), None)
    assert not is_set(parse_cards(["7H", "7H#1", "7S"]), None)
    assert not is_set(parse_cards(["7H", "7S", "7D", "7C", "JOKER1"]), None)


def test_arrange_hand_finds_zero_deadwood_for_complete_hand():
    arrangement = arrange_hand(parse_cards(WINNING_HAND), "A")
    assert arrangement.deadwood == 0
    assert arrangement.has_pure_sequence
    assert arrangement.sequence_count == 3
    assert sorted(meld.kind for meld in arrangement.melds).count(MeldKind.SET) == 1
    assert arrangement.deadwood_cards == []


def test_without_pure_sequence_every_card_counts():
    cards = parse_cards(["7H", "7S", "7D", "8H", "8S", "8D", "2C", "5C", "9C", "KC", "3D", "4S", "JH"])
    arrangement = arrange_hand(cards, None)
    assert not arrangement.has_pure_sequence
    assert arrangement.melds == []
    assert arrangement.deadwood == 88
    assert hand_points(cards, None) == 80
    assert hand_points(cards, None, cap=None) == 88


def test_single_sequence_only_melds_the_pure_sequence():
    cards = parse_cards(["5H", "6H", "7H", "9S", "9D", "9C", "KS", "KD", "KC", "2S", "4D", "6C", "8S"])
    arrangement = arrange_hand(cards, None)
    assert arrangement.has_pure_sequence
    assert [meld.kind for meld in arrangement.melds] == [MeldKind.PURE_SEQUENCE]
    assert arrangement.deadwood == 77


def test_wild_card_completes_second_sequence_and_unlocks_sets():
    cards = parse_cards(["5H", "6H", "7H", "9S", "9D", "9C", "KS", "KD", "KC", "2S", "4D", "6C", "8S"])
    arrangement = arrange_hand(cards, "2")
    assert arrangement.sequence_count == 2
    assert arrangement.deadwood == 28


def test_printed_and_wild_jokers_score_zero():
    cards = parse_cards(["JOKER1", "5C", "KD"])
    assert hand_points(cards, "5") == 10
    assert not has_pure_sequence(cards, "5")


def test_arrange_hand_rejects_empty_and_duplicate_hands():
    with pytest.raises(ValueError, match="empty"):
        arrange_hand([], None)
    with pytest.raises(ValueError, match="Duplicate"):
        arrange_hand(parse_cards(["5H", "5H"]), None)
