"""
Rally Protocol Module - JSON Message Protocol
=============================================

Encoding/decoding of the JSON text frames exchanged between rally clients
and the room server, plus the room-state data classes they carry.

ENVELOPE (every frame):
    {"type": <MessageType>, "roomId": <str, optional>, "payload": <object>}

CLIENT -> SERVER:
    STATE_REQUEST        {}
    PLAYER_ADD           {id, name, marchDurationMs}      upsert by id
    PLAYER_REMOVE        {id}
    RALLY_START          {starterId, rallyDurationMs, preDelayMs[, launchAt]}
    RALLY_END            {}
    TIME_SYNC_REQUEST    {t0}

SERVER -> CLIENT:
    STATE                {players, rally, lastActiveAt}   full snapshot
    TIME_SYNC_RESPONSE   {t0, t1, t2}

All instants are integer milliseconds since the Unix epoch.

Clock sync (three-timestamp handshake):
    t0 = client send (local clock)
    t1 = server receive, t2 = server send (server clock)
    t3 = client receive (local clock)
    RTT    = max(0, (t3 - t0) - (t2 - t1))
    Offset = ((t1 - t0) + (t2 - t3)) / 2
"""

import json
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


# =================
# CONSTANTS
# =================

class MessageType(str, Enum):
    """Frame type identifiers (the "type" key of every frame)."""
    STATE_REQUEST = "STATE_REQUEST"
    PLAYER_ADD = "PLAYER_ADD"
    PLAYER_REMOVE = "PLAYER_REMOVE"
    RALLY_START = "RALLY_START"
    RALLY_END = "RALLY_END"
    TIME_SYNC_REQUEST = "TIME_SYNC_REQUEST"
    STATE = "STATE"
    TIME_SYNC_RESPONSE = "TIME_SYNC_RESPONSE"


# Longest march a player may declare (24h)
MAX_MARCH_MS = 24 * 60 * 60 * 1000


# ===================
# UTILITY FUNCTIONS
# ===================

def current_time_ms() -> int:
    """Current time in milliseconds since Unix epoch."""
    return int(time.time() * 1000)


def is_finite_number(value: Any) -> bool:
    """True for int/float values that are neither NaN nor infinite (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _require_str(data: dict, key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"Missing or invalid '{key}'")
    return value


def _require_ms(data: dict, *keys: str) -> int:
    """Read the first present key as a finite millisecond value."""
    for key in keys:
        if key in data:
            value = data[key]
            if not is_finite_number(value):
                raise ValueError(f"'{key}' is not a finite number: {value!r}")
            return int(round(value))
    raise ValueError(f"Missing '{keys[0]}'")


# =================
# DATA CLASSES
# =================

@dataclass(frozen=True)
class Player:
    """A roster entry. Owned by the room state, upserted by id."""

    id: str
    name: str
    march_duration_ms: int

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "marchDurationMs": self.march_duration_ms}

    @classmethod
    def from_dict(cls, data: Any) -> "Player":
        """Decode a player; accepts the legacy ``marchMs`` key."""
        if not isinstance(data, dict):
            raise ValueError(f"Player must be an object, got {type(data).__name__}")
        name = data.get("name", "")
        if not isinstance(name, str):
            raise ValueError("Player 'name' must be a string")
        march = _require_ms(data, "marchDurationMs", "marchMs")
        if march < 0:
            raise ValueError(f"Negative march duration: {march}")
        return cls(id=_require_str(data, "id"), name=name, march_duration_ms=march)


@dataclass(frozen=True)
class Rally:
    """The single active rally of a room.

    ``launch_at`` is assigned by the server and never moves; a new rally
    replaces the whole object. ``rally_duration_ms`` is carried when the
    starter supplied it so every client derives the same rally-start instant.
    """

    starter_id: str
    launch_at: int
    rally_duration_ms: Optional[int] = None

    def to_dict(self) -> dict:
        data = {"starterId": self.starter_id, "launchAt": self.launch_at}
        if self.rally_duration_ms is not None:
            data["rallyDurationMs"] = self.rally_duration_ms
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Rally":
        if not isinstance(data, dict):
            raise ValueError(f"Rally must be an object, got {type(data).__name__}")
        duration = None
        if data.get("rallyDurationMs") is not None:
            duration = _require_ms(data, "rallyDurationMs")
            if duration < 0:
                raise ValueError(f"Negative rally duration: {duration}")
        return cls(
            starter_id=_require_str(data, "starterId"),
            launch_at=_require_ms(data, "launchAt"),
            rally_duration_ms=duration,
        )


@dataclass
class RoomState:
    """Authoritative room aggregate. Clients replace their replica on every push."""

    players: list[Player] = field(default_factory=list)
    rally: Optional[Rally] = None
    last_active_at: int = 0

    def find_player(self, player_id: str) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def to_dict(self) -> dict:
        return {
            "players": [p.to_dict() for p in self.players],
            "rally": self.rally.to_dict() if self.rally else None,
            "lastActiveAt": self.last_active_at,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "RoomState":
        if not isinstance(data, dict):
            raise ValueError(f"State must be an object, got {type(data).__name__}")
        players = data.get("players") or []
        if not isinstance(players, list):
            raise ValueError("'players' must be a list")
        rally = data.get("rally")
        last_active = data.get("lastActiveAt")
        return cls(
            players=[Player.from_dict(p) for p in players],
            rally=Rally.from_dict(rally) if rally is not None else None,
            last_active_at=int(last_active) if is_finite_number(last_active) else 0,
        )


@dataclass(frozen=True)
class TimeSyncRequest:
    """Clock sync request."""
    t0: int  # Client send time (local clock, ms)

    def to_dict(self) -> dict:
        return {"t0": self.t0}

    @classmethod
    def from_dict(cls, data: Any) -> "TimeSyncRequest":
        if not isinstance(data, dict) or not is_finite_number(data.get("t0")):
            raise ValueError("TIME_SYNC_REQUEST needs a finite 't0'")
        return cls(t0=data["t0"])


@dataclass(frozen=True)
class TimeSyncResponse:
    """Clock sync response; t0 echoed, t1/t2 stamped by the server."""
    t0: float
    t1: float
    t2: float

    def to_dict(self) -> dict:
        return {"t0": self.t0, "t1": self.t1, "t2": self.t2}

    @classmethod
    def from_dict(cls, data: Any) -> "TimeSyncResponse":
        if not isinstance(data, dict):
            raise ValueError("TIME_SYNC_RESPONSE payload must be an object")
        values = [data.get(k) for k in ("t0", "t1", "t2")]
        if not all(is_finite_number(v) for v in values):
            raise ValueError(f"Non-finite sync timestamps: {values!r}")
        return cls(*values)


@dataclass
class Message:
    """One JSON frame: a type, an optional room id and a payload object."""

    type: MessageType
    payload: Any = None
    room_id: Optional[str] = None

    def encode(self) -> str:
        data: dict[str, Any] = {"type": self.type.value}
        if self.room_id is not None:
            data["roomId"] = self.room_id
        if self.payload is not None:
            data["payload"] = self.payload
        return json.dumps(data, separators=(",", ":"))

    @classmethod
    def decode(cls, raw: str) -> "Message":
        """Decode a text frame.

        Raises:
            ValueError: unparsable JSON, missing or unknown type.
        """
        try:
            data = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise ValueError(f"Unparsable frame: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Frame is not an object")
        try:
            msg_type = MessageType(data.get("type"))
        except ValueError:
            raise ValueError(f"Unknown frame type: {data.get('type')!r}") from None
        room_id = data.get("roomId")
        return cls(
            type=msg_type,
            payload=data.get("payload"),
            room_id=room_id if isinstance(room_id, str) else None,
        )


def removal_target(payload: Any) -> str:
    """Player id carried by a PLAYER_REMOVE payload (``{id}`` or a bare string)."""
    if isinstance(payload, str) and payload:
        return payload
    if isinstance(payload, dict):
        return _require_str(payload, "id")
    raise ValueError("PLAYER_REMOVE needs an id")
