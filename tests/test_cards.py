import itertools
import random
from collections import Counter

import pytest

from cardtable.cards import Card, build_deck, deal, parse_cards, parse_label, shuffle


def test_build_deck_sizes_and_unique_ids():
    assert len(build_deck()) == 52
    assert len(build_deck(include_jokers=True)) == 54
    double = build_deck(include_jokers=True, decks=2)
    assert len(double) == 108
    assert len({card.id for card in double}) == 108


def test_card_validation_rejects_invalid_labels():
    with pytest.raises(ValueError, match="Invalid rank"):
        Card("1", "H")
    with pytest.raises(ValueError, match="Invalid suit"):
        Card("A", "X")


def test_parse_label_handles_ten_second_deck_and_jokers():
    assert parse_label("10h") == Card("10", "H")
    assert parse_label("QS#1") == Card("Q", "S", 1)
    assert parse_label("JOKER2") == Card("JOKER", "*", 1)
    assert parse_label("JOKER").is_printed_joker
    assert [card.id for card in parse_cards(["AS", "10D#1", "JOKER1"])] == ["AS", "10D#1", "JOKER1"]


def test_joker_points_and_face_values():
    assert Card("K", "S").value == 10
    assert Card("A", "S").value == 10
    assert Card("7", "C").value == 7
    assert Card("JOKER", "*").value == 0


def test_shuffle_returns_permutation_and_keeps_input():
    deck = build_deck(include_jokers=True)
    shuffled = shuffle(deck, random.Random(7))
    assert sorted(card.id for card in shuffled) == sorted(card.id for card in deck)
    assert deck == build_deck(include_jokers=True)
    assert shuffled != deck


def test_shuffle_distribution_is_roughly_uniform():
    rng = random.Random(2024)
    counts = Counter(tuple(shuffle([1, 2, 3], rng)) for _ in range(6_000))
    assert set(counts) == set(itertools.permutations([1, 2, 3]))
    for permutation, seen in counts.items():
        assert 850 < seen < 1_150, permutation


def test_deal_takes_from_top_and_raises_when_short():
    deck = parse_cards(["AS", "KS", "QS"])
    assert deal(deck, 2) == parse_cards(["AS", "KS"])
    assert deck == parse_cards(["QS"])
    with pytest.raises(ValueError, match="Not enough cards"):
        deal(deck, 2)
