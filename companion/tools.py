"""Tools the voice agent may call.

The tool set is closed: :class:`ToolBox` is built from one handler per tool
and dispatches on the tool name. Handler errors never escape ``invoke``;
they become a textual result the agent can speak back.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, ClassVar, Dict, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.errors import ToolHandlerFailure
from common.log import emit
from common.types import Location, Song, ToolCall, ToolResult

PlacesLookup = Callable[[str, Location], Awaitable[str]]


class FindNearbyPlacesArgs(BaseModel):
    query: str


class PlaySpotifySongArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    song_name: str = Field(alias="songName")
    artist: str


class FindNearbyPlaces:
    name: ClassVar[str] = "find_nearby_places"
    declaration: ClassVar[Dict[str, Any]] = {
        "name": name,
        "description": "Finds nearby places like restaurants, gas stations, or coffee "
                       "shops based on a query.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "query": {
                    "type": "STRING",
                    "description": 'The type of place to search for, e.g., "coffee shop", "rest area".',
                },
            },
            "required": ["query"],
        },
    }

    def __init__(self, location: Callable[[], Optional[Location]],
                 lookup: Optional[PlacesLookup] = None) -> None:
        self._location = location
        self._lookup = lookup

    async def __call__(self, args: Dict[str, Any]) -> str:
        parsed = FindNearbyPlacesArgs.model_validate(args)
        loc = self._location()
        if loc is None:
            return "I can't find nearby places because I don't have your current location."
        if self._lookup is None:
            return "Nearby search isn't available right now."
        return await self._lookup(parsed.query, loc)


class NowPlaying:
    """Last song requested through the agent."""

    def __init__(self) -> None:
        self.song: Optional[Song] = None

    async def play(self, song: Song) -> None:
        self.song = song
        emit("music.play", title=song.title, artist=song.artist)


class PlaySpotifySong:
    name: ClassVar[str] = "play_spotify_song"
    declaration: ClassVar[Dict[str, Any]] = {
        "name": name,
        "description": "Plays a song on Spotify. Use this for any music-related requests.",
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "songName": {"type": "STRING", "description": "The name of the song to play."},
                "artist": {"type": "STRING", "description": "The artist of the song."},
            },
            "required": ["songName", "artist"],
        },
    }

    def __init__(self, player: NowPlaying) -> None:
        self.player = player

    async def __call__(self, args: Dict[str, Any]) -> str:
        parsed = PlaySpotifySongArgs.model_validate(args)
        await self.player.play(Song(
            title=parsed.song_name,
            artist=parsed.artist,
            album_art_url=f"https://picsum.photos/seed/{quote(parsed.song_name, safe='')}/200",
        ))
        return f"Now playing {parsed.song_name} by {parsed.artist}. Enjoy!"


class ToolBox:
    def __init__(self, find_nearby_places: FindNearbyPlaces, play_spotify_song: PlaySpotifySong) -> None:
        self.find_nearby_places = find_nearby_places
        self.play_spotify_song = play_spotify_song

    def declarations(self) -> List[Dict[str, Any]]:
        return [FindNearbyPlaces.declaration, PlaySpotifySong.declaration]

    async def invoke(self, call: ToolCall) -> ToolResult:
        """Run one call; always returns a result carrying ``call.id``."""

        emit("tool.call", id=call.id, name=call.name, args=call.args)
        if call.name == FindNearbyPlaces.name:
            handler = self.find_nearby_places
        elif call.name == PlaySpotifySong.name:
            handler = self.play_spotify_song
        else:
            emit("tool.error", id=call.id, name=call.name, error="unknown tool")
            return ToolResult(id=call.id, name=call.name,
                              result=f"I don't know how to do {call.name}.")
        try:
            text = await handler(call.args)
        except ValidationError as exc:
            emit("tool.error", id=call.id, name=call.name, error=str(exc))
            text = _incomplete(call.name)
        except Exception as exc:
            failure = ToolHandlerFailure(call.name, exc)
            emit("tool.error", id=call.id, name=call.name, error=str(failure))
            text = f"I had trouble with {call.name}. Please try again."
        emit("tool.result", id=call.id, name=call.name)
        return ToolResult(id=call.id, name=call.name, result=str(text))

    def reject(self, raw: Any, error: Exception) -> Optional[ToolResult]:
        """Failure result for a call that did not validate.

        Returns ``None`` when the call has no usable id to answer.
        """

        call_id = raw.get("id") if isinstance(raw, dict) else None
        if not isinstance(call_id, str) or not call_id:
            emit("tool.error", id=None, name=None, error=str(error))
            return None
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            name = "that tool"
        emit("tool.error", id=call_id, name=name, error=str(error))
        return ToolResult(id=call_id, name=name, result=_incomplete(name))


def _incomplete(name: str) -> str:
    return f"I couldn't use {name} because the request was incomplete."
