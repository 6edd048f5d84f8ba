"""
WebSocket Rally Client
======================

Connects to a room on the rally server over WebSocket, keeps a replica of
the room state, maintains NTP-style clock synchronization, and re-derives
the rally timeline on every tick.
"""

import asyncio
import logging
import uuid
from typing import Callable, Optional
from urllib.parse import quote

import aiohttp

from .announcer import Announcer, CueSink, LoopCueSink
from .clock_sync import ClockSync
from .protocol import (
    MAX_MARCH_MS,
    Message,
    MessageType,
    Player,
    RoomState,
    TimeSyncRequest,
    TimeSyncResponse,
    current_time_ms,
)
from .schedule import RallyTimeline, compute_rally
from .settings import LocalSettings

logger = logging.getLogger(__name__)

TICK_INTERVAL = 0.2
SYNC_INTERVAL = 10.0
SYNC_BURST_SIZE = 6
SYNC_BURST_SPACING = 0.25


class RallyClient:
    """WebSocket client for one rally room.

    Handles:
      - Full-snapshot STATE pushes (last snapshot wins)
      - Burst-based clock synchronization with the server
      - A fixed-rate tick recomputing the rally timeline and call-outs
      - The room write operations (players, rally start/end)

    Args:
        url:       WebSocket URL of the rally server (e.g. ws://host:8787/ws).
        room_id:   Room to join.
        settings:  Local preferences; defaults are used if omitted.
        on_state:  Optional callback invoked with each new RoomState.
        cue_sink:  Audio back end for call-outs (default: event-loop clock sink).
        clock:     Local clock in epoch ms, replaceable for tests.
    """

    def __init__(
        self,
        url: str,
        room_id: str = "local",
        settings: Optional[LocalSettings] = None,
        on_state: Optional[Callable[[RoomState], None]] = None,
        cue_sink: Optional[CueSink] = None,
        clock: Callable[[], int] = current_time_ms,
        tick_interval: float = TICK_INTERVAL,
        sync_interval: float = SYNC_INTERVAL,
        burst_size: int = SYNC_BURST_SIZE,
        burst_spacing: float = SYNC_BURST_SPACING,
    ):
        sep = "&" if "?" in url else "?"
        self.url = f"{url}{sep}instance_id={quote(room_id)}"
        self.room_id = room_id
        self.settings = settings or LocalSettings()
        self.on_state = on_state
        self.state = RoomState()
        self.timeline: Optional[RallyTimeline] = None

        self._clock_fn = clock
        self._tick_interval = tick_interval
        self._sync_interval = sync_interval
        self._burst_size = burst_size
        self._burst_spacing = burst_spacing

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._connected = False
        self._running = False

        self._clock = ClockSync(window=burst_size)
        self._sink = cue_sink or LoopCueSink()
        self.announcer = Announcer(self._sink, self.settings)
        self._tasks: list[asyncio.Task] = []

    # ---- Properties ----------------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected and self._ws is not None

    @property
    def clock(self) -> ClockSync:
        return self._clock

    @property
    def clock_offset(self) -> float:
        """Current clock offset to the server (ms). Positive = server ahead."""
        return self._clock.offset

    @property
    def clock_synced(self) -> bool:
        """True if a best estimate was produced within the freshness window."""
        return self._clock.synced(self._clock_fn())

    @property
    def rally_duration_ms(self) -> int:
        return self.settings.rally_duration_ms

    def corrected_now(self) -> int:
        """Local time converted to server time using the clock offset."""
        return self._clock.to_server_time(self._clock_fn())

    # ---- Connection lifecycle ------------------------------------------------

    async def connect(self) -> bool:
        """Connect to the server and start background tasks.

        Returns:
            True if connection succeeded.
        """
        try:
            self._session = aiohttp.ClientSession()
            self._ws = await self._session.ws_connect(self.url, heartbeat=25.0)
            self._connected = True
            self._running = True
            logger.info(f"Connected to room {self.room_id}")

            self._tasks.append(asyncio.create_task(self._recv_loop()))
            self._tasks.append(asyncio.create_task(self._sync_loop()))
            self._tasks.append(asyncio.create_task(self._tick_loop()))

            await self.request_state()
            return True

        except Exception as e:
            logger.error(f"Connect failed: {e}")
            await self._cleanup()
            return False

    async def close(self):
        """Gracefully shut down the client."""
        logger.info("Closing...")
        self._connected = False
        self._running = False
        await self._cleanup()

    async def __aenter__(self) -> "RallyClient":
        if not await self.connect():
            raise ConnectionError(f"Could not connect to {self.url}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ---- Receive loop --------------------------------------------------------

    async def _recv_loop(self):
        """Main receive loop: dispatches JSON frames by type."""
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED,
                                  aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Recv error: {e}")
        if self._connected:
            logger.warning("Connection lost; keeping last known state")
        self._connected = False

    def _handle_text(self, raw: str):
        """Route a text frame to the appropriate handler. Bad frames are dropped."""
        rx_time = self._clock_fn()
        try:
            msg = Message.decode(raw)
            if msg.type == MessageType.STATE:
                self._apply_state(RoomState.from_dict(msg.payload))
            elif msg.type == MessageType.TIME_SYNC_RESPONSE:
                self._handle_sync_response(TimeSyncResponse.from_dict(msg.payload), rx_time)
        except ValueError as e:
            logger.debug(f"Dropping frame: {e}")

    def _apply_state(self, state: RoomState):
        self.state = state
        if self.on_state:
            try:
                self.on_state(state)
            except Exception as e:
                logger.error(f"Callback error: {e}")

    # ---- Clock sync ----------------------------------------------------------

    async def _sync_loop(self):
        """Sync burst on connect, then one burst per interval."""
        try:
            while self.connected:
                await self.sync_burst()
                await asyncio.sleep(self._sync_interval)
        except asyncio.CancelledError:
            pass

    async def sync_burst(self):
        """Send several sync requests spaced apart."""
        for i in range(self._burst_size):
            if i:
                await asyncio.sleep(self._burst_spacing)
            await self._send_sync()

    async def _send_sync(self):
        """Send a single clock sync request."""
        req = TimeSyncRequest(t0=self._clock_fn())
        await self._send(MessageType.TIME_SYNC_REQUEST, req.to_dict())

    def _handle_sync_response(self, resp: TimeSyncResponse, t3: int):
        """Process a clock sync response from the server."""
        sample = self._clock.process(resp.t0, resp.t1, resp.t2, t3)
        if sample is None:
            return
        logger.info(
            f"Clock sync: offset={self._clock.offset:.1f}ms rtt={self._clock.rtt:.1f}ms "
            f"(sample rtt={sample.rtt_ms:.1f}ms, {self._clock.sample_count} in window)"
        )

    # ---- Tick ----------------------------------------------------------------

    async def _tick_loop(self):
        """Recompute the rally projection at a fixed rate until closed."""
        try:
            while self._running:
                self.tick()
                await asyncio.sleep(self._tick_interval)
        except asyncio.CancelledError:
            pass

    def tick(self) -> Optional[RallyTimeline]:
        """One tick: corrected time -> timeline -> call-outs."""
        now = self.corrected_now()
        self.timeline = compute_rally(self.state, now, self.rally_duration_ms)
        try:
            self.announcer.update(self.timeline, now)
        except Exception as e:
            logger.error(f"Callback error: {e}")
        return self.timeline

    # ---- Room operations -----------------------------------------------------

    async def _send(self, msg_type: MessageType, payload=None) -> bool:
        if not self.connected:
            return False
        text = Message(msg_type, payload, room_id=self.room_id).encode()
        try:
            await self._ws.send_str(text)
            return True
        except Exception as e:
            logger.error(f"Send {msg_type.value} error: {e}")
            return False

    async def request_state(self) -> bool:
        return await self._send(MessageType.STATE_REQUEST)

    async def add_player(self, name: str, march_duration_ms: int, player_id: Optional[str] = None) -> Player:
        """Add (or replace, when ``player_id`` exists) a roster entry.

        Raises:
            ValueError: empty name or march outside (0, 24h].
        """
        name = name.strip()
        if not name:
            raise ValueError("Player name is empty")
        if not 0 < march_duration_ms <= MAX_MARCH_MS:
            raise ValueError(f"March duration out of range: {march_duration_ms}ms")
        player = Player(id=player_id or str(uuid.uuid4()), name=name, march_duration_ms=int(march_duration_ms))
        await self._send(MessageType.PLAYER_ADD, player.to_dict())
        return player

    async def remove_player(self, player_id: str) -> bool:
        return await self._send(MessageType.PLAYER_REMOVE, {"id": player_id})

    async def start_rally(
        self,
        starter_id: str,
        rally_duration_ms: Optional[int] = None,
        pre_delay_ms: Optional[int] = None,
    ) -> bool:
        """Ask the server to start a rally; it assigns launchAt from its own clock.

        Raises:
            ValueError: starter is not on the current roster.
        """
        if self.state.find_player(starter_id) is None:
            raise ValueError(f"Unknown starter: {starter_id}")
        payload = {
            "starterId": starter_id,
            "rallyDurationMs": rally_duration_ms if rally_duration_ms is not None else self.rally_duration_ms,
            "preDelayMs": pre_delay_ms if pre_delay_ms is not None else self.settings.pre_delay_ms,
        }
        return await self._send(MessageType.RALLY_START, payload)

    async def end_rally(self) -> bool:
        self.announcer.reset()
        return await self._send(MessageType.RALLY_END, {})

    # ---- Cleanup -------------------------------------------------------------

    async def _cleanup(self):
        """Cancel tasks, pending cues and close connections."""
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"Task error during cleanup: {e}")
        self._tasks.clear()

        if isinstance(self._sink, LoopCueSink):
            self._sink.cancel()
        if self._ws and not self._ws.closed:
            await self._ws.close()
        if self._session:
            await self._session.close()
        self._ws = None
        self._session = None
