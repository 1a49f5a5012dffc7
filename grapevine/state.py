from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from grapevine.errors import PlayerNotFoundError
from grapevine.log import get_logger
from grapevine.utils import parse_player_identifier

logger = get_logger(__name__)


@dataclass(frozen=True)
class PlayerRef:
    name: str
    game: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "game": self.game}

    def __str__(self) -> str:
        return f"{self.name}@{self.game}"


@dataclass
class RemoteGame:
    name: str
    display_name: Optional[str] = None
    # lower-cased name -> name as the hub reported it
    players: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def add_player(self, name: str) -> None:
        self.players[name.lower()] = name

    def remove_player(self, name: str) -> None:
        self.players.pop(name.lower(), None)

    def replace_players(self, names: Iterable[str]) -> None:
        self.players = {n.lower(): n for n in names if isinstance(n, str) and n}

    def get_player(self, name: str) -> Optional[str]:
        return self.players.get(name.lower())

    def list_sorted(self) -> List[str]:
        return sorted(self.players.values(), key=str.lower)


class NetworkState:
    """
    Local view of the other games on the network and who is signed in there.

    Built only from inbound frames. Game names are matched
    case-insensitively; the casing the hub last used is kept for display.
    """

    def __init__(self) -> None:
        self._games: Dict[str, RemoteGame] = {}

    def __len__(self) -> int:
        return len(self._games)

    def __contains__(self, game: object) -> bool:
        return isinstance(game, str) and game.lower() in self._games

    def get_game(self, name: str) -> Optional[RemoteGame]:
        return self._games.get(name.lower())

    def _ensure_game(self, name: str) -> RemoteGame:
        game = self._games.get(name.lower())
        if game is None:
            game = RemoteGame(name=name)
            self._games[name.lower()] = game
        elif game.name != name:
            game.name = name
        return game

    # ---- presence pushes ----

    def game_connected(self, payload: Dict[str, Any]) -> None:
        name = _game_name(payload)
        if name is None:
            return
        self._ensure_game(name)
        logger.debug("Game connected", extra={"game": name})

    def game_disconnected(self, payload: Dict[str, Any]) -> None:
        name = _game_name(payload)
        if name is None:
            return
        self._games.pop(name.lower(), None)
        logger.debug("Game disconnected", extra={"game": name})

    def player_signed_in(self, payload: Dict[str, Any]) -> None:
        name = _game_name(payload)
        player = payload.get("name")
        if name is None or not isinstance(player, str) or not player:
            return
        self._ensure_game(name).add_player(player)

    def player_signed_out(self, payload: Dict[str, Any]) -> None:
        name = _game_name(payload)
        player = payload.get("name")
        if name is None or not isinstance(player, str):
            return
        game = self.get_game(name)
        if game is not None:
            game.remove_player(player)

    # ---- snapshots ----

    def apply_players_status(self, payload: Dict[str, Any]) -> None:
        """Replace rosters from a players/status frame (one game or a "games" list)"""
        for entry in _status_entries(payload):
            name = _game_name(entry)
            if name is None:
                continue
            players = entry.get("players") or []
            if not isinstance(players, list):
                continue
            self._ensure_game(name).replace_players(players)

    def apply_games_status(self, payload: Dict[str, Any]) -> None:
        """Record game metadata from a games/status frame"""
        for entry in _status_entries(payload):
            name = _game_name(entry)
            if name is None:
                continue
            game = self._ensure_game(name)
            display_name = entry.get("display_name")
            if isinstance(display_name, str):
                game.display_name = display_name
            game.metadata.update({k: v for k, v in entry.items() if k not in ("game", "display_name", "players")})
            if isinstance(entry.get("players"), list):
                game.replace_players(entry["players"])

    def clear(self) -> None:
        if self._games:
            logger.debug("Discarding cached state for %d game(s)", len(self._games))
        self._games.clear()

    # ---- lookups ----

    def find_player(self, identifier: str) -> PlayerRef:
        """
        Look up 'player@game' in the cache, case-insensitively.

        Raises:
            PlayerNotFoundError: if the game or the player is not known
        """
        player, game_name = parse_player_identifier(identifier)
        game = self.get_game(game_name)
        if game is None:
            raise PlayerNotFoundError(f"Game {game_name!r} is not connected")
        found = game.get_player(player)
        if found is None:
            raise PlayerNotFoundError(f"{player!r} is not signed in to {game.name}")
        return PlayerRef(name=found, game=game.name)

    def snapshot(self) -> Dict[str, List[str]]:
        """Copy of the cache: game name -> sorted player names"""
        return {game.name: game.list_sorted() for game in self._games.values()}


def _game_name(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    name = payload.get("game")
    if isinstance(name, str) and name:
        return name
    return None


def _status_entries(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    games = payload.get("games") if isinstance(payload, dict) else None
    if isinstance(games, list):
        return [g for g in games if isinstance(g, dict)]
    return [payload] if isinstance(payload, dict) else []
