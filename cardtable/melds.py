from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from .cards import RANKS, SUITS, Card

# Rummy meld rules. Printed jokers and every card of the round's wild rank
# may stand in for any card; both count zero points when unmatched.

FULL_COUNT = 80
_LOW_ACE = 1
_HIGH_ACE = 14
_INF = 10**9


class MeldKind(str, Enum):
    PURE_SEQUENCE = "PURE_SEQUENCE"
    SEQUENCE = "SEQUENCE"
    SET = "SET"


@dataclass
class Meld:
    kind: MeldKind
    cards: List[Card]

    @property
    def is_sequence(self) -> bool:
        return self.kind in (MeldKind.PURE_SEQUENCE, MeldKind.SEQUENCE)

    def labels(self) -> List[str]:
        return [card.label for card in self.cards]


@dataclass
class HandArrangement:
    melds: List[Meld] = field(default_factory=list)
    deadwood_cards: List[Card] = field(default_factory=list)
    deadwood: int = 0
    has_pure_sequence: bool = False

    @property
    def sequence_count(self) -> int:
        return sum(1 for meld in self.melds if meld.is_sequence)

    def as_payload(self) -> Dict[str, object]:
        return {
            "melds": [{"kind": meld.kind.value, "cards": meld.labels()} for meld in self.melds],
            "deadwood_cards": [card.label for card in self.deadwood_cards],
            "deadwood": self.deadwood,
            "has_pure_sequence": self.has_pure_sequence,
        }


def is_joker(card: Card, wild_rank: Optional[str]) -> bool:
    return card.is_printed_joker or (wild_rank is not None and card.rank == wild_rank)


def point_value(card: Card, wild_rank: Optional[str]) -> int:
    return 0 if is_joker(card, wild_rank) else card.value


def _positions(card: Card) -> Tuple[int, ...]:
    if card.rank == "A":
        return (_LOW_ACE, _HIGH_ACE)
    return (card.index,)


def _rank_at(position: int) -> str:
    if position in (_LOW_ACE, _HIGH_ACE):
        return "A"
    return RANKS[position - 2]


def _is_consecutive(cards: Sequence[Card]) -> bool:
    for ace_high in (True, False):
        positions = sorted(
            (_HIGH_ACE if ace_high else _LOW_ACE) if card.rank == "A" else card.index for card in cards
        )
        if positions == list(range(positions[0], positions[0] + len(positions))):
            return True
    return False


def is_pure_sequence(cards: Sequence[Card]) -> bool:
    """Three or more consecutive cards of one suit, no substitution."""
    if len(cards) < 3:
        return False
    if any(card.is_printed_joker for card in cards):
        return False
    if len({card.suit for card in cards}) != 1:
        return False
    return _is_consecutive(cards)


def is_sequence(cards: Sequence[Card], wild_rank: Optional[str]) -> bool:
    if len(cards) < 3 or len(cards) > len(RANKS):
        return False
    if is_pure_sequence(cards):
        return True
    naturals = [card for card in cards if not is_joker(card, wild_rank)]
    if not naturals:
        return True
    if len({card.suit for card in naturals}) != 1:
        return False
    length = len(cards)
    for ace_high in (True, False):
        positions = sorted(
            (_HIGH_ACE if ace_high else _LOW_ACE) if card.rank == "A" else card.index for card in naturals
        )
        if len(set(positions)) != len(positions):
            continue
        span = positions[-1] - positions[0] + 1
        if span > length:
            continue
        # Jokers fill the gaps and may extend either end, within A..A.
        lowest_start = max(_LOW_ACE, positions[-1] - length + 1)
        for start in range(lowest_start, positions[0] + 1):
            end = start + length - 1
            if end <= _HIGH_ACE and not (start == _LOW_ACE and end == _HIGH_ACE):
                return True
    return False


def is_set(cards: Sequence[Card], wild_rank: Optional[str]) -> bool:
    if len(cards) not in (3, 4):
        return False
    naturals = [card for card in cards if not is_joker(card, wild_rank)]
    if not naturals:
        return True
    if len({card.rank for card in naturals}) != 1:
        return False
    return len({card.suit for card in naturals}) == len(naturals)


def _sort_key(card: Card, wild_rank: Optional[str]) -> Tuple[int, int, int, int]:
    suit_order = SUITS.index(card.suit) if not card.is_printed_joker else len(SUITS)
    index = card.index if not card.is_printed_joker else 0
    return (1 if is_joker(card, wild_rank) else 0, suit_order, index, card.deck)


class _Search:
    """Memoised minimum-deadwood search over the cards still unassigned."""

    def __init__(self, cards: Sequence[Card], wild_rank: Optional[str]) -> None:
        self.wild_rank = wild_rank
        self.cards = sorted(cards, key=lambda c: _sort_key(c, wild_rank))
        self.jokers = [idx for idx, card in enumerate(self.cards) if is_joker(card, wild_rank)]
        # Printed jokers are spent as fillers before wild cards, which may be needed naturally.
        self.jokers.sort(key=lambda idx: 0 if self.cards[idx].is_printed_joker else 1)
        self.slots: Dict[Tuple[str, str], List[int]] = {}
        for idx, card in enumerate(self.cards):
            if not card.is_printed_joker:
                self.slots.setdefault((card.rank, card.suit), []).append(idx)
        self.memo: Dict[Tuple[FrozenSet[int], bool, int, bool], Tuple[int, Tuple[Tuple[MeldKind, Tuple[int, ...]], ...]]] = {}

    def points(self, idx: int) -> int:
        return point_value(self.cards[idx], self.wild_rank)

    def anchor(self, remaining: FrozenSet[int]) -> Optional[int]:
        naturals = [idx for idx in remaining if not is_joker(self.cards[idx], self.wild_rank)]
        return min(naturals) if naturals else None

    def _natural(self, remaining: FrozenSet[int], rank: str, suit: str, used: set) -> Optional[int]:
        for idx in self.slots.get((rank, suit), ()):
            if idx in remaining and idx not in used:
                return idx
        return None

    def _sequences(self, anchor: int, remaining: FrozenSet[int]) -> List[Tuple[MeldKind, Tuple[int, ...]]]:
        card = self.cards[anchor]
        found: List[Tuple[MeldKind, Tuple[int, ...]]] = []
        seen = set()
        longest = len(RANKS) - 1
        for pos in _positions(card):
            for start in range(max(_LOW_ACE, pos - longest), pos + 1):
                used = {anchor}
                fillers = 0
                for position in range(start, pos):
                    natural = self._natural(remaining, _rank_at(position), card.suit, used)
                    if natural is None:
                        fillers += 1
                    else:
                        used.add(natural)
                for end in range(pos, min(_HIGH_ACE, start + longest) + 1):
                    if start == _LOW_ACE and end == _HIGH_ACE:
                        break
                    if end > pos:
                        natural = self._natural(remaining, _rank_at(end), card.suit, used)
                        if natural is None:
                            fillers += 1
                        else:
                            used.add(natural)
                    if end - start + 1 < 3:
                        continue
                    spare = [idx for idx in self.jokers if idx in remaining and idx not in used]
                    if fillers > len(spare):
                        break
                    members = frozenset(used) | frozenset(spare[:fillers])
                    if members in seen:
                        continue
                    seen.add(members)
                    kind = MeldKind.PURE_SEQUENCE if fillers == 0 else MeldKind.SEQUENCE
                    found.append((kind, tuple(sorted(members))))
        return found

    def _sets(self, anchor: int, remaining: FrozenSet[int]) -> List[Tuple[MeldKind, Tuple[int, ...]]]:
        card = self.cards[anchor]
        partners = []
        for suit in SUITS:
            if suit == card.suit:
                continue
            natural = self._natural(remaining, card.rank, suit, {anchor})
            if natural is not None:
                partners.append(natural)
        spare = [idx for idx in self.jokers if idx in remaining]
        found: List[Tuple[MeldKind, Tuple[int, ...]]] = []
        for size in (3, 4):
            for count in range(0, min(len(partners), size - 1) + 1):
                fillers = size - 1 - count
                if fillers > len(spare):
                    continue
                for chosen in itertools.combinations(partners, count):
                    members = (anchor,) + chosen + tuple(spare[:fillers])
                    found.append((MeldKind.SET, tuple(sorted(members))))
        return found

    def best(self, remaining: FrozenSet[int], has_pure: bool, sequences: int, pure_only: bool):
        key = (remaining, has_pure, sequences, pure_only)
        if key in self.memo:
            return self.memo[key]

        anchor = self.anchor(remaining)
        if anchor is None:
            satisfied = has_pure if pure_only else (has_pure and sequences >= 2)
            result = (0, ()) if satisfied else (_INF, ())
            self.memo[key] = result
            return result

        rest_cost, rest_melds = self.best(remaining - {anchor}, has_pure, sequences, pure_only)
        best_result = (rest_cost + self.points(anchor), rest_melds)

        candidates = self._sequences(anchor, remaining)
        if not pure_only:
            candidates += self._sets(anchor, remaining)
        for kind, members in candidates:
            if pure_only and kind != MeldKind.PURE_SEQUENCE:
                continue
            is_seq = kind != MeldKind.SET
            sub_cost, sub_melds = self.best(
                remaining - frozenset(members),
                has_pure or kind == MeldKind.PURE_SEQUENCE,
                min(2, sequences + (1 if is_seq else 0)),
                pure_only,
            )
            if sub_cost < best_result[0]:
                best_result = (sub_cost, ((kind, members),) + sub_melds)

        self.memo[key] = best_result
        return best_result


def arrange_hand(cards: Sequence[Card], wild_rank: Optional[str]) -> HandArrangement:
    """Group a rummy hand into melds with the lowest possible deadwood.

    Without a pure sequence nothing counts as melded. With a pure sequence
    but no second sequence, only pure sequences are melded. Otherwise every
    valid meld (pure sequence, sequence, set) reduces the deadwood.
    """
    if not cards:
        raise ValueError("Cannot arrange an empty hand")
    if len({card.id for card in cards}) != len(cards):
        raise ValueError("Duplicate card in hand")

    search = _Search(cards, wild_rank)
    everything = frozenset(range(len(search.cards)))
    total = sum(search.points(idx) for idx in everything)

    full_cost, full_melds = search.best(everything, False, 0, False)
    pure_cost, pure_melds = search.best(everything, False, 0, True)

    if full_cost >= _INF and pure_cost >= _INF:
        return HandArrangement(melds=[], deadwood_cards=list(search.cards), deadwood=total, has_pure_sequence=False)

    chosen = full_melds if full_cost <= pure_cost else pure_melds
    melded = set()
    melds = []
    for kind, members in chosen:
        melded.update(members)
        melds.append(Meld(kind, [search.cards[idx] for idx in members]))
    leftovers = [search.cards[idx] for idx in sorted(everything - melded)]
    return HandArrangement(
        melds=melds,
        deadwood_cards=leftovers,
        deadwood=min(full_cost, pure_cost),
        has_pure_sequence=True,
    )


def has_pure_sequence(cards: Sequence[Card], wild_rank: Optional[str]) -> bool:
    return arrange_hand(cards, wild_rank).has_pure_sequence


def hand_points(cards: Sequence[Card], wild_rank: Optional[str], cap: Optional[int] = FULL_COUNT) -> int:
    if not cards:
        return 0
    deadwood = arrange_hand(cards, wild_rank).deadwood
    return min(deadwood, cap) if cap is not None else deadwood
