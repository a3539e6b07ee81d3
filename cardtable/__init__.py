"""Card game session engines: Teen Patti, Rummy and a Rummy score ledger."""

from .cards import Card, RANKS, SUITS, build_deck, deal, parse_cards, shuffle
from .evaluator import HandRank, compare, evaluate
from .melds import HandArrangement, arrange_hand, hand_points, is_sequence, is_set
from .models import ActionResult, Event, Phase, PlayerStatus, SessionConfig
from .registry import GAME_TYPES, SessionRegistry
from .rummy import RummySession
from .rummy_ledger import RummyLedgerSession
from .teen_patti import TeenPattiSession
from .timers import LoopScheduler, ManualScheduler

__all__ = [
    "Card",
    "RANKS",
    "SUITS",
    "build_deck",
    "deal",
    "parse_cards",
    "shuffle",
    "HandRank",
    "compare",
    "evaluate",
    "HandArrangement",
    "arrange_hand",
    "hand_points",
    "is_sequence",
    "is_set",
    "ActionResult",
    "Event",
    "Phase",
    "PlayerStatus",
    "SessionConfig",
    "GAME_TYPES",
    "SessionRegistry",
    "RummySession",
    "RummyLedgerSession",
    "TeenPattiSession",
    "LoopScheduler",
    "ManualScheduler",
]
