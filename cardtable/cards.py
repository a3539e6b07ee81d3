from __future__ import annotations

import random
from dataclasses import dataclass
from typing import List, Optional, Sequence

RANKS = ("2", "3", "4", "5", "6", "7", "8", "9", "10", "J", "Q", "K", "A")
SUITS = ("S", "H", "D", "C")
JOKER_RANK = "JOKER"
JOKER_SUIT = "*"

RANK_INDEX = {rank: idx for idx, rank in enumerate(RANKS, start=2)}
POINT_VALUES = {rank: (10 if rank in ("J", "Q", "K", "A") else int(rank)) for rank in RANKS}


@dataclass(frozen=True)
class Card:
    rank: str
    suit: str
    deck: int = 0

    def __post_init__(self) -> None:
        if self.rank == JOKER_RANK:
            if self.suit != JOKER_SUIT:
                raise ValueError(f"Invalid joker suit: {self.suit}")
            return
        if self.rank not in RANK_INDEX:
            raise ValueError(f"Invalid rank: {self.rank}")
        if self.suit not in SUITS:
            raise ValueError(f"Invalid suit: {self.suit}")

    @property
    def is_printed_joker(self) -> bool:
        return self.rank == JOKER_RANK

    @property
    def id(self) -> str:
        # Printed jokers have no natural identity, so the deck slot numbers them.
        if self.is_printed_joker:
            return f"JOKER{self.deck + 1}"
        if self.deck:
            return f"{self.rank}{self.suit}#{self.deck}"
        return f"{self.rank}{self.suit}"

    @property
    def label(self) -> str:
        return self.id

    @property
    def index(self) -> int:
        """Ordinal rank, Ace high (2..14). Printed jokers have none."""
        if self.is_printed_joker:
            raise ValueError("Printed joker has no rank index")
        return RANK_INDEX[self.rank]

    @property
    def value(self) -> int:
        """Rummy point value of the card when left unmatched."""
        if self.is_printed_joker:
            return 0
        return POINT_VALUES[self.rank]


def build_deck(include_jokers: bool = False, decks: int = 1, jokers_per_deck: int = 2) -> List[Card]:
    if decks < 1:
        raise ValueError("At least one deck required")
    cards: List[Card] = []
    for deck_no in range(decks):
        cards.extend(Card(rank, suit, deck_no) for suit in SUITS for rank in RANKS)
    if include_jokers:
        cards.extend(Card(JOKER_RANK, JOKER_SUIT, slot) for slot in range(jokers_per_deck * decks))
    return cards


def shuffle(deck: Sequence[Card], rng: Optional[random.Random] = None) -> List[Card]:
    """Fisher-Yates from the last index down. Returns a new list."""
    rng = rng or random.Random()
    shuffled = list(deck)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randrange(i + 1)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def deal(deck: List[Card], count: int) -> List[Card]:
    if len(deck) < count:
        raise ValueError("Not enough cards left in deck")
    cards = deck[:count]
    del deck[:count]
    return cards


def cards_to_labels(cards: Sequence[Card]) -> List[str]:
    return [card.label for card in cards]


def parse_label(label: str) -> Card:
    raw = label.strip().upper()
    if raw.startswith(JOKER_RANK):
        slot = raw[len(JOKER_RANK):] or "1"
        if not slot.isdigit() or int(slot) < 1:
            raise ValueError(f"Invalid card label: {label}")
        return Card(JOKER_RANK, JOKER_SUIT, int(slot) - 1)
    deck = 0
    if "#" in raw:
        raw, _, deck_raw = raw.partition("#")
        if not deck_raw.isdigit():
            raise ValueError(f"Invalid card label: {label}")
        deck = int(deck_raw)
    if len(raw) < 2:
        raise ValueError(f"Invalid card label: {label}")
    return Card(raw[:-1], raw[-1], deck)


def parse_cards(labels: Sequence[str]) -> List[Card]:
    return [parse_label(label) for label in labels]
