"""Reference rally room server.

Holds one authoritative RoomState per room id in memory, applies the write
operations sent by clients, answers clock sync probes and pushes a full
STATE snapshot to every socket of the room after each mutation.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from aiohttp import WSMsgType, web

from .protocol import (
    Message,
    MessageType,
    Player,
    Rally,
    RoomState,
    TimeSyncRequest,
    TimeSyncResponse,
    current_time_ms,
    is_finite_number,
    removal_target,
)

logger = logging.getLogger(__name__)

DEFAULT_ROOM = "local"
# Rooms idle for longer than this start over empty
MAX_ROOM_AGE_MS = 6 * 60 * 60 * 1000


@dataclass
class Room:
    room_id: str
    state: RoomState
    sockets: set[web.WebSocketResponse] = field(default_factory=set)


def room_id_from(request: web.Request) -> str:
    return request.query.get("instance_id") or request.query.get("roomId") or DEFAULT_ROOM


class RallyServer:
    """In-memory rally rooms served over aiohttp.

    Args:
        clock: Server clock in epoch ms, replaceable for tests.
        max_room_age_ms: Idle time after which a room is reset.
    """

    def __init__(
        self,
        clock: Callable[[], int] = current_time_ms,
        max_room_age_ms: int = MAX_ROOM_AGE_MS,
    ) -> None:
        self._clock = clock
        self._max_room_age_ms = max_room_age_ms
        self._rooms: dict[str, Room] = {}
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    # ---- Application ---------------------------------------------------------

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/ws", self._handle_websocket)
        app.router.add_get("/state", self._handle_state)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def start(self, host: str = "0.0.0.0", port: int = 8787) -> None:
        """Start serving on host:port."""
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host=host, port=port)
        await self._site.start()
        logger.info("Rally server listening on %s:%d", host, port)

    async def stop(self) -> None:
        """Stop the server and close every room socket."""
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.debug("Rally server stopped")

    async def __aenter__(self) -> "RallyServer":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: object,
    ) -> None:
        await self.stop()

    # ---- Rooms ---------------------------------------------------------------

    def room(self, room_id: str) -> Room:
        """Get a room, creating it, or resetting it when it sat idle too long."""
        now = self._clock()
        self._evict_idle(now, keep=room_id)
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id, RoomState(last_active_at=now))
            self._rooms[room_id] = room
            logger.debug("Created room %s", room_id)
        elif now - room.state.last_active_at > self._max_room_age_ms:
            room.state = RoomState(last_active_at=now)
            logger.info("Room %s was idle too long; reset", room_id)
        return room

    def _evict_idle(self, now: int, keep: Optional[str] = None) -> None:
        """Forget rooms with no sockets that sat idle too long."""
        for room_id, room in list(self._rooms.items()):
            if room_id == keep or room.sockets:
                continue
            if now - room.state.last_active_at > self._max_room_age_ms:
                del self._rooms[room_id]
                logger.debug("Dropped idle room %s", room_id)

    def snapshot(self, room: Room) -> str:
        return Message(MessageType.STATE, room.state.to_dict()).encode()

    async def broadcast(self, room: Room) -> None:
        text = self.snapshot(room)
        for ws in list(room.sockets):
            try:
                await ws.send_str(text)
            except (ConnectionError, RuntimeError) as e:
                logger.debug("Broadcast to a closed socket in %s failed: %s", room.room_id, e)

    # ---- Handlers ------------------------------------------------------------

    async def _handle_state(self, request: web.Request) -> web.Response:
        room = self.room(room_id_from(request))
        return web.json_response({"ok": True, "state": room.state.to_dict()})

    async def _handle_websocket(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30)
        await ws.prepare(request)

        room = self.room(room_id_from(request))
        room.sockets.add(ws)
        logger.info("Client joined room %s (%d connected)", room.room_id, len(room.sockets))

        try:
            await ws.send_str(self.snapshot(room))
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self.handle_message(room, ws, msg.data, self._clock())
                elif msg.type == WSMsgType.ERROR:
                    logger.debug("Socket error in room %s: %s", room.room_id, ws.exception())
        finally:
            room.sockets.discard(ws)
            logger.info("Client left room %s (%d connected)", room.room_id, len(room.sockets))
            self._evict_idle(self._clock())

        return ws

    async def handle_message(
        self, room: Room, ws: web.WebSocketResponse, raw: str, received_at: int
    ) -> None:
        """Apply one client frame to the room. Invalid frames are ignored."""
        room.state.last_active_at = received_at
        try:
            msg = Message.decode(raw)
            mutated = self._apply(room, msg, received_at)
        except ValueError as e:
            logger.debug("Ignoring frame in room %s: %s", room.room_id, e)
            return

        if msg.type == MessageType.STATE_REQUEST:
            await ws.send_str(self.snapshot(room))
        elif msg.type == MessageType.TIME_SYNC_REQUEST:
            req = TimeSyncRequest.from_dict(msg.payload)
            resp = TimeSyncResponse(t0=req.t0, t1=received_at, t2=self._clock())
            await ws.send_str(Message(MessageType.TIME_SYNC_RESPONSE, resp.to_dict()).encode())
        elif mutated:
            await self.broadcast(room)

    def _apply(self, room: Room, msg: Message, received_at: int) -> bool:
        """Mutate room state for a write operation. Returns True if state changed.

        Raises:
            ValueError: the payload is invalid for its frame type.
        """
        state = room.state
        if msg.type == MessageType.PLAYER_ADD:
            player = Player.from_dict(msg.payload)
            for i, existing in enumerate(state.players):
                if existing.id == player.id:
                    state.players[i] = player
                    break
            else:
                state.players.append(player)
            return True

        if msg.type == MessageType.PLAYER_REMOVE:
            player_id = removal_target(msg.payload)
            state.players = [p for p in state.players if p.id != player_id]
            if state.rally is not None and state.rally.starter_id == player_id:
                state.rally = None
            return True

        if msg.type == MessageType.RALLY_START:
            rally = self._rally_from(msg.payload, received_at)
            if state.find_player(rally.starter_id) is None:
                raise ValueError(f"Unknown starter: {rally.starter_id}")
            state.rally = rally
            logger.info(
                "Rally started in %s: starter=%s launchAt=%d",
                room.room_id,
                state.rally.starter_id,
                state.rally.launch_at,
            )
            return True

        if msg.type == MessageType.RALLY_END:
            state.rally = None
            return True

        if msg.type == MessageType.TIME_SYNC_REQUEST:
            TimeSyncRequest.from_dict(msg.payload)
            return False

        if msg.type == MessageType.STATE_REQUEST:
            return False

        raise ValueError(f"{msg.type.value} is not a client frame")

    @staticmethod
    def _rally_from(payload: object, received_at: int) -> Rally:
        """Build the rally for a RALLY_START; launchAt comes from the server clock."""
        if not isinstance(payload, dict):
            raise ValueError("RALLY_START payload must be an object")
        starter_id = payload.get("starterId")
        if not isinstance(starter_id, str) or not starter_id:
            raise ValueError("RALLY_START needs a starterId")

        duration = payload.get("rallyDurationMs")
        duration_ms = None
        if duration is not None:
            if not is_finite_number(duration) or duration < 0:
                raise ValueError(f"Invalid rallyDurationMs: {duration!r}")
            duration_ms = int(duration)

        launch_at = payload.get("launchAt")
        if is_finite_number(launch_at):
            return Rally(starter_id, int(launch_at), duration_ms)

        delay = payload.get("preDelayMs", 0)
        if delay is None:
            delay = 0
        if not is_finite_number(delay) or delay < 0:
            raise ValueError(f"Invalid preDelayMs: {delay!r}")
        if duration_ms is None:
            raise ValueError("RALLY_START needs rallyDurationMs or launchAt")
        return Rally(starter_id, received_at + int(delay) + duration_ms, duration_ms)

    async def _on_shutdown(self, app: web.Application) -> None:
        for room in list(self._rooms.values()):
            for ws in list(room.sockets):
                await ws.close(code=1001, message=b"Server shutdown")
