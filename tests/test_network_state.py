import pytest

from grapevine.errors import PlayerNotFoundError
from grapevine.state import NetworkState, PlayerRef


@pytest.fixture
def network() -> NetworkState:
    state = NetworkState()
    state.apply_players_status({"games": [
        {"game": "OtherGame", "players": ["Bob", "Alice"]},
        {"game": "SomeGame", "players": ["SomeOtherPlayer"]},
    ]})
    return state


def test_find_player_matches_case_insensitively(network):
    assert network.find_player("bob@othergame") == PlayerRef(name="Bob", game="OtherGame")
    assert network.find_player("someotherplayer@SOMEGAME").to_dict() == {
        "name": "SomeOtherPlayer",
        "game": "SomeGame",
    }


@pytest.mark.parametrize("identifier", ["carol@othergame", "bob@nowhere", "bob", "@othergame", "bob@"])
def test_find_player_misses_raise(network, identifier):
    with pytest.raises(PlayerNotFoundError):
        network.find_player(identifier)


def test_presence_pushes_update_rosters(network):
    network.player_signed_in({"game": "OtherGame", "name": "Carol"})
    assert network.find_player("carol@othergame").name == "Carol"

    network.player_signed_out({"game": "othergame", "name": "BOB"})
    with pytest.raises(PlayerNotFoundError):
        network.find_player("bob@othergame")

    network.game_disconnected({"game": "SomeGame"})
    assert "SomeGame" not in network

    network.game_connected({"game": "NewGame"})
    assert network.snapshot()["NewGame"] == []


def test_single_game_status_replaces_only_that_roster(network):
    network.apply_players_status({"game": "OtherGame", "players": ["Dave"]})

    assert network.snapshot() == {"OtherGame": ["Dave"], "SomeGame": ["SomeOtherPlayer"]}


def test_games_status_records_metadata():
    network = NetworkState()
    network.apply_games_status({"game": "OtherGame", "display_name": "Other Game", "homepage_url": "https://example.com"})

    game = network.get_game("othergame")
    assert game.display_name == "Other Game"
    assert game.metadata == {"homepage_url": "https://example.com"}


def test_snapshot_is_a_copy(network):
    snapshot = network.snapshot()
    snapshot["OtherGame"].append("Mallory")

    assert network.snapshot()["OtherGame"] == ["Alice", "Bob"]

    network.clear()
    assert network.snapshot() == {}
