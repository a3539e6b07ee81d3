from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

from .models import (
    LedgerAction,
    LedgerConfig,
    RummyAction,
    RummyConfig,
    SessionConfig,
    TeenPattiAction,
    TeenPattiConfig,
)
from .rummy import RummySession
from .rummy_ledger import RummyLedgerSession
from .session import SessionMachine
from .teen_patti import TeenPattiSession

LOGGER = logging.getLogger("cardtable.registry")


@dataclass
class GamePlugin:
    id: str
    name: str
    description: str
    min_players: int
    max_players: int
    session_class: Type[SessionMachine]
    config_class: Type[SessionConfig]
    supported_actions: List[str] = field(default_factory=list)
    version: str = "1.0.0"

    def default_config(self) -> Dict[str, Any]:
        return asdict(self.config_class())

    def metadata(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "min_players": self.min_players,
            "max_players": self.max_players,
            "supported_actions": list(self.supported_actions),
            "default_config": self.default_config(),
        }


GAME_TYPES: Dict[str, GamePlugin] = {
    "teen-patti": GamePlugin(
        id="teen-patti",
        name="Teen Patti",
        description="Three-card betting game with blind and seen play",
        min_players=2,
        max_players=17,
        session_class=TeenPattiSession,
        config_class=TeenPattiConfig,
        supported_actions=[action.value for action in TeenPattiAction],
    ),
    "rummy": GamePlugin(
        id="rummy",
        name="Rummy",
        description="13-card points rummy with a closed joker",
        min_players=2,
        max_players=6,
        session_class=RummySession,
        config_class=RummyConfig,
        supported_actions=[action.value for action in RummyAction],
    ),
    "rummy-ledger": GamePlugin(
        id="rummy-ledger",
        name="Rummy Ledger",
        description="Score sheet for rummy played with physical cards",
        min_players=2,
        max_players=10,
        session_class=RummyLedgerSession,
        config_class=LedgerConfig,
        supported_actions=[action.value for action in LedgerAction],
    ),
}


def available_games() -> List[Dict[str, Any]]:
    return [plugin.metadata() for plugin in GAME_TYPES.values()]


def get_plugin(game_type: str) -> GamePlugin:
    try:
        return GAME_TYPES[game_type]
    except KeyError:
        raise KeyError(f"Unknown game type: {game_type}") from None


class SessionRegistry:
    """Owns live sessions, keyed by id, and routes calls to them."""

    def __init__(self, scheduler=None) -> None:
        self.scheduler = scheduler
        self._sessions: Dict[str, SessionMachine] = {}

    @property
    def sessions(self) -> Dict[str, SessionMachine]:
        return dict(self._sessions)

    def create_session(
        self,
        game_type: str,
        session_id: str,
        session_name: str = "",
        config: Optional[Mapping[str, Any]] = None,
        players: Optional[Sequence[Mapping[str, Any]]] = None,
        subscribers=None,
    ) -> SessionMachine:
        plugin = get_plugin(game_type)
        if session_id in self._sessions:
            raise RuntimeError(f"Session already exists: {session_id}")
        players = list(players or [])
        if players and len(players) < plugin.min_players:
            raise ValueError(f"Minimum {plugin.min_players} players required")
        if len(players) > plugin.max_players:
            raise ValueError(f"Maximum {plugin.max_players} players allowed")

        session_config = plugin.config_class.from_dict(
            config,
            session_id=session_id,
            session_name=session_name or session_id,
        )
        session = plugin.session_class(session_config, scheduler=self.scheduler, subscribers=subscribers)
        if players:
            session.set_players(players)
        self._sessions[session_id] = session
        LOGGER.info("Registered %s session %s with %s players", game_type, session_id, len(players))
        return session

    def restore_session(self, snapshot: Mapping[str, Any], subscribers=None) -> SessionMachine:
        """Rebuild a live session from a ``serialize`` snapshot."""
        plugin = get_plugin(str(snapshot.get("game_type")))
        config = plugin.config_class.from_dict(snapshot.get("config"))
        if config.session_id in self._sessions:
            raise RuntimeError(f"Session already exists: {config.session_id}")
        session = plugin.session_class(config, scheduler=self.scheduler, subscribers=subscribers)
        session.restore(snapshot)
        self._sessions[config.session_id] = session
        LOGGER.info("Restored %s session %s", plugin.id, config.session_id)
        return session

    def get(self, session_id: str) -> SessionMachine:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise KeyError(f"Unknown session: {session_id}") from None

    def remove_session(self, session_id: str) -> None:
        session = self.get(session_id)
        session.timers.cancel_all()
        del self._sessions[session_id]

    def handle_action(self, session_id: str, action: Mapping[str, Any]):
        return self.get(session_id).handle_action(action)

    def start_round(self, session_id: str):
        return self.get(session_id).start_round()

    def end_session(self, session_id: str, reason: str = "OPERATOR_ENDED") -> Dict[str, object]:
        return self.get(session_id).end_session(reason)

    def get_public_state(self, session_id: str) -> Dict[str, object]:
        return self.get(session_id).get_public_state()

    def get_player_hand(self, session_id: str, player_id: str) -> Optional[Dict[str, object]]:
        return self.get(session_id).get_player_hand(player_id)

    def serialize(self, session_id: str) -> Dict[str, object]:
        return self.get(session_id).serialize()
