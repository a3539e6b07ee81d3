from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .cards import Card, parse_cards

HAND_SIZE = 3

TRIO = 5
PURE_RUN = 4
RUN = 3
FLUSH = 2
PAIR = 1
HIGH_CARD = 0

_CATEGORY_NAMES = {
    TRIO: "trio",
    PURE_RUN: "pure_run",
    RUN: "run",
    FLUSH: "flush",
    PAIR: "pair",
    HIGH_CARD: "high_card",
}


@dataclass(frozen=True, order=True)
class HandRank:
    category: int
    tiebreak: Tuple[int, ...]


def evaluate(cards: Sequence[Card]) -> HandRank:
    """Rank a three-card Teen Patti hand. Higher compares greater."""
    if len(cards) != HAND_SIZE:
        raise ValueError(f"Teen Patti hands need exactly {HAND_SIZE} cards, got {len(cards)}")
    if len({card.id for card in cards}) != HAND_SIZE:
        raise ValueError("Duplicate card in hand")
    if any(card.is_printed_joker for card in cards):
        raise ValueError("Jokers are not used in Teen Patti")

    values = sorted((card.index for card in cards), reverse=True)
    same_suit = len({card.suit for card in cards}) == 1
    run_high = _run_strength(values)

    if values[0] == values[1] == values[2]:
        return HandRank(TRIO, (values[0],))
    if run_high is not None and same_suit:
        return HandRank(PURE_RUN, (run_high,))
    if run_high is not None:
        return HandRank(RUN, (run_high,))
    if same_suit:
        return HandRank(FLUSH, tuple(values))
    if values[0] == values[1] or values[1] == values[2]:
        pair = values[1]
        kicker = values[2] if values[0] == values[1] else values[0]
        return HandRank(PAIR, (pair, kicker))
    return HandRank(HIGH_CARD, tuple(values))


def _run_strength(values: Sequence[int]) -> Optional[int]:
    # A-K-Q beats A-2-3, which beats K-Q-J and everything below it.
    if list(values) == [14, 13, 12]:
        return 16
    if list(values) == [14, 3, 2]:
        return 15
    if values[0] - values[1] == 1 and values[1] - values[2] == 1:
        return values[0]
    return None


def compare(hand_a: Sequence[Card], hand_b: Sequence[Card]) -> int:
    rank_a = evaluate(hand_a)
    rank_b = evaluate(hand_b)
    if rank_a > rank_b:
        return 1
    if rank_a < rank_b:
        return -1
    return 0


def describe_rank(rank: HandRank) -> str:
    return _CATEGORY_NAMES[rank.category]


def evaluate_labels(labels: Sequence[str]) -> HandRank:
    return evaluate(parse_cards(labels))
