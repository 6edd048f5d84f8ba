"""
Rally Client Package
====================

Clock-synchronized rally countdowns over WebSocket: every client derives,
from a shared server-assigned launch instant, when each player has to
start marching so that all marches land together.

Modules:
    protocol   - JSON frames and room-state data classes
    clock_sync - NTP-style clock synchronization (minimum-RTT window)
    schedule   - Rally timeline / phase projection
    announcer  - De-duplicated countdown call-outs
    display    - Text formatting of the timeline
    settings   - Local (per-client) settings persistence
    client     - WebSocket client orchestration
    server     - In-memory reference room server
"""

from .protocol import (
    MessageType,
    Message,
    Player,
    Rally,
    RoomState,
    TimeSyncRequest,
    TimeSyncResponse,
    current_time_ms,
)
from .clock_sync import ClockSync, ClockSyncSample
from .schedule import Phase, RallyRow, RallyTimeline, compute_rally
from .announcer import Announcer, Announcement, Cue, LoopCueSink, plan_cues
from .settings import LocalSettings
from .client import RallyClient
from .server import RallyServer

__all__ = [
    "MessageType",
    "Message",
    "Player",
    "Rally",
    "RoomState",
    "TimeSyncRequest",
    "TimeSyncResponse",
    "current_time_ms",
    "ClockSync",
    "ClockSyncSample",
    "Phase",
    "RallyRow",
    "RallyTimeline",
    "compute_rally",
    "Announcer",
    "Announcement",
    "Cue",
    "LoopCueSink",
    "plan_cues",
    "LocalSettings",
    "RallyClient",
    "RallyServer",
]
