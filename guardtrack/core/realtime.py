"""
Realtime layer: connection registry and the WebSocket message protocol.

Frames are JSON text of the form ``{"type": <event>, "data": {...}}``.
A socket must send ``authenticate`` with a bearer token before anything
else; the role is taken from the user directory, never from the client.

Outbound frames are queued per connection and written by a pump task, so
broadcasting never suspends the caller and emergency frames overtake
queued normal ones.
"""
import asyncio
import itertools
import json
import logging
from enum import IntEnum
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PayloadError
from sqlalchemy.ext.asyncio import AsyncSession

from guardtrack.config import settings
from guardtrack.core.emergency_alert import EmergencyService
from guardtrack.core.security import decode_access_token
from guardtrack.core.tenancy import get_guard_for_user, get_user_company_id
from guardtrack.core.tracking import TrackingService
from guardtrack.errors import AppError, AuthenticationError, UnauthorizedError
from guardtrack.models.base import new_id, utcnow
from guardtrack.models.emergency import (
    EmergencyAlert, EmergencyRequest, EmergencySeverity, EmergencyType
)
from guardtrack.models.tracking import (
    GeofenceEvent, GeofenceEventCreate, GeofenceEventRead, LocationSampleCreate,
    LocationSampleRead, TrackingRecord
)
from guardtrack.models.user import User, UserRole

logger = logging.getLogger(__name__)

ADMINS = "admins"
GUARDS = "guards"

# Clients watch the same dashboards as admins
ADMIN_GROUP_ROLES = (UserRole.ADMIN, UserRole.SUPER_ADMIN, UserRole.CLIENT)

class MessagePriority(IntEnum):
    HIGH = 0
    NORMAL = 1

class ClientConnection:
    """One live socket and its authenticated principal"""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.id = connection_id or new_id()
        self.user_id: Optional[str] = None
        self.role: Optional[UserRole] = None
        self.guard_id: Optional[str] = None
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._sequence = itertools.count()
        self._pump_task: Optional[asyncio.Task] = None

    def start(self):
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    def send(self, event: str, data: Any, priority: MessagePriority = MessagePriority.NORMAL):
        text = json.dumps({"type": event, "data": data}, default=str)
        # Sequence keeps FIFO order within one priority
        self._queue.put_nowait((priority, next(self._sequence), text))

    async def flush(self):
        """Wait until every queued frame has been written"""
        await self._queue.join()

    async def close(self):
        if self._pump_task is None:
            return
        self._pump_task.cancel()
        try:
            await self._pump_task
        except asyncio.CancelledError:
            pass
        self._pump_task = None

    async def _pump(self):
        while True:
            _, _, text = await self._queue.get()
            try:
                await self.websocket.send_text(text)
            except Exception as e:
                logger.warning(f"Error sending to connection {self.id}: {e}")
            finally:
                self._queue.task_done()

class ConnectionRegistry:
    """
    Live socket-to-principal mapping.

    A guard reconnecting takes over its entry (last writer wins); the old
    socket is not closed and its entry is only dropped if it still points at
    that socket when it disconnects.
    """

    def __init__(self):
        self._connections: Dict[str, ClientConnection] = {}
        self._guard_connections: Dict[str, str] = {}
        self._groups: Dict[str, Set[str]] = {ADMINS: set(), GUARDS: set()}

    def register(self, connection: ClientConnection):
        self._connections[connection.id] = connection

        if connection.role == UserRole.GUARD:
            self._groups[GUARDS].add(connection.id)
            if connection.guard_id:
                self._guard_connections[connection.guard_id] = connection.id
            logger.info(f"Guard {connection.guard_id} connected")
        elif connection.role in ADMIN_GROUP_ROLES:
            self._groups[ADMINS].add(connection.id)
            logger.info(f"{connection.role.value} {connection.user_id} connected")

    def unregister(self, connection_id: str) -> Optional[ClientConnection]:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        for members in self._groups.values():
            members.discard(connection_id)

        if connection.guard_id and self._guard_connections.get(connection.guard_id) == connection_id:
            del self._guard_connections[connection.guard_id]
            logger.info(f"Guard {connection.guard_id} disconnected")

        logger.debug(f"Connection {connection_id} unregistered")
        return connection

    def lookup(self, connection_id: str) -> Optional[ClientConnection]:
        return self._connections.get(connection_id)

    def connection_for_guard(self, guard_id: str) -> Optional[ClientConnection]:
        connection_id = self._guard_connections.get(guard_id)
        return self._connections.get(connection_id) if connection_id else None

    def broadcast(
        self,
        group: str,
        event: str,
        data: Any,
        priority: MessagePriority = MessagePriority.NORMAL
    ) -> int:
        recipients = [self._connections[cid] for cid in self._groups[group] if cid in self._connections]
        for connection in recipients:
            connection.send(event, data, priority)

        logger.debug(f"Broadcasted {event} to {len(recipients)} {group} connection(s)")
        return len(recipients)

    def send_to_guard(
        self,
        guard_id: str,
        event: str,
        data: Any,
        priority: MessagePriority = MessagePriority.NORMAL
    ) -> bool:
        connection = self.connection_for_guard(guard_id)
        if connection is None:
            return False

        connection.send(event, data, priority)
        return True

    def send_to_user(
        self,
        user_id: str,
        event: str,
        data: Any,
        priority: MessagePriority = MessagePriority.NORMAL
    ) -> int:
        recipients = [c for c in self._connections.values() if c.user_id == user_id]
        for connection in recipients:
            connection.send(event, data, priority)
        return len(recipients)

    def is_guard_online(self, guard_id: str) -> bool:
        return guard_id in self._guard_connections

    def get_connection_stats(self) -> Dict[str, int]:
        return {
            "totalConnections": len(self._connections),
            "guards": len(self._guard_connections),
            "admins": len(self._groups[ADMINS]),
        }

Handler = Callable[[ClientConnection, Dict[str, Any]], Awaitable[None]]

class RealtimeService:
    """Serves WebSocket clients and fans tracking and emergency events out"""

    def __init__(
        self,
        session_factory,
        tracking_service: TrackingService,
        emergency_service: EmergencyService,
        registry: Optional[ConnectionRegistry] = None,
        auth_timeout: float = settings.WEBSOCKET_AUTH_TIMEOUT,
        auto_geofence_transitions: bool = settings.AUTO_GEOFENCE_TRANSITIONS
    ):
        self.session_factory = session_factory
        self.tracking_service = tracking_service
        self.emergency_service = emergency_service
        self.registry = registry or ConnectionRegistry()
        self.auth_timeout = auth_timeout
        self.auto_geofence_transitions = auto_geofence_transitions
        self._broadcast_task: Optional[asyncio.Task] = None

        self._handlers: Dict[str, Handler] = {
            "location_update": self.handle_location_update,
            "geofence_event": self.handle_geofence_event,
            "emergency_alert": self.handle_emergency_alert,
            "shift_status_update": self.handle_shift_status_update,
            "request_live_locations": self.handle_request_live_locations,
        }

    async def serve(self, websocket: WebSocket):
        await websocket.accept()
        connection = ClientConnection(websocket)
        connection.start()
        logger.debug(f"Client connected: {connection.id}")

        try:
            if not await self._await_authentication(connection):
                await connection.flush()
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                return

            # One message at a time: receipt order is processing order
            while True:
                text = await self._receive(websocket)
                await self.dispatch(connection, text)

        except WebSocketDisconnect:
            logger.debug(f"Client disconnected: {connection.id}")
        finally:
            self.registry.unregister(connection.id)
            await connection.close()

    async def _await_authentication(self, connection: ClientConnection) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.auth_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break

            try:
                text = await asyncio.wait_for(self._receive(connection.websocket), remaining)
            except asyncio.TimeoutError:
                break

            message = self._parse(connection, text)
            if message is None:
                continue

            event, data = message
            if event != "authenticate":
                connection.send("error", {"message": "Authentication required"})
                continue

            if await self.authenticate(connection, data):
                return True

        logger.info(f"Connection {connection.id} did not authenticate in time")
        connection.send("authentication_error", {"message": "Authentication timeout"})
        return False

    @staticmethod
    async def _receive(websocket: WebSocket) -> Optional[str]:
        """Next text frame; None for a binary frame"""
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
        return message.get("text")

    async def authenticate(self, connection: ClientConnection, data: Dict[str, Any]) -> bool:
        """Verify the token and register the connection under its real role"""
        try:
            token = data.get("token")
            if not token:
                raise AuthenticationError("Token required")

            payload = decode_access_token(token)

            async with self.session_factory() as db:
                user = await db.get(User, payload["sub"])
                if user is None or not user.is_active:
                    raise AuthenticationError("User not found or inactive")

                guard = None
                if user.role == UserRole.GUARD:
                    guard = await get_guard_for_user(db, user.id)
                    if guard is None:
                        raise AuthenticationError("Guard profile not found")

        except AuthenticationError as e:
            logger.warning(f"Authentication failed for connection {connection.id}: {e.message}")
            connection.send("authentication_error", {"message": e.message})
            return False

        connection.user_id = user.id
        connection.role = user.role
        connection.guard_id = guard.id if guard else None
        self.registry.register(connection)

        connection.send("authenticated", {
            "success": True,
            "userId": user.id,
            "role": user.role.value,
            "guardId": connection.guard_id,
        })
        return True

    async def dispatch(self, connection: ClientConnection, text: Optional[str]):
        """Handle one inbound frame; failures are reported to this socket only"""
        message = self._parse(connection, text)
        if message is None:
            return

        event, data = message
        if event == "authenticate":
            connection.send("error", {"event": event, "message": "Already authenticated"})
            return

        handler = self._handlers.get(event)
        if handler is None:
            connection.send("error", {"event": event, "message": f"Unknown message type: {event}"})
            return

        try:
            await handler(connection, data)
        except AppError as e:
            connection.send("error", {"event": event, "message": e.message})
        except PayloadError as e:
            connection.send("error", {"event": event, "message": f"Invalid {event} payload: {e.error_count()} error(s)"})
        except Exception:
            logger.exception(f"Failed to handle {event} from connection {connection.id}")
            connection.send("error", {"event": event, "message": f"Failed to handle {event}"})

    def _parse(self, connection: ClientConnection, text: Optional[str]) -> Optional[Tuple[str, Dict[str, Any]]]:
        message = None
        if text is not None:
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                pass

        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            connection.send("error", {"message": "Malformed message"})
            return None

        data = message.get("data") or {}
        if not isinstance(data, dict):
            connection.send("error", {"message": "Malformed message"})
            return None

        return message["type"], data

    def _require_guard(self, connection: ClientConnection, data: Dict[str, Any]) -> str:
        if connection.role != UserRole.GUARD or not connection.guard_id:
            raise UnauthorizedError("Only guards can send this message")

        claimed = data.get("guardId")
        if claimed and claimed not in (connection.guard_id, connection.user_id):
            raise UnauthorizedError("Guards can only report for themselves")

        return connection.guard_id

    async def handle_location_update(self, connection: ClientConnection, data: Dict[str, Any]):
        guard_id = self._require_guard(connection, data)
        sample = LocationSampleCreate.model_validate(data)

        async with self.session_factory() as db:
            await self.process_location(db, guard_id, sample)

    async def process_location(
        self,
        db: AsyncSession,
        guard_id: str,
        sample: LocationSampleCreate
    ) -> TrackingRecord:
        """Persist a sample, push it to admins, then derive geofence transitions"""
        record = await self.tracking_service.record_location(db, guard_id, sample)

        self.registry.broadcast(ADMINS, "guard_location_update", {
            "guardId": record.guard_id,
            "location": LocationSampleRead.model_validate(record).to_wire(),
            "timestamp": utcnow().isoformat(),
        })

        if self.auto_geofence_transitions:
            await self._derive_geofence_transitions(record)

        return record

    async def _derive_geofence_transitions(self, record: TrackingRecord):
        # The sample is already stored; a failure here must not reject it
        try:
            async with self.session_factory() as db:
                events = await self.tracking_service.detect_geofence_transitions(
                    db, record.guard_id, record.latitude, record.longitude, record.accuracy, record.timestamp
                )
        except Exception:
            logger.exception(f"Geofence transition detection failed for guard {record.guard_id}")
            return

        for event in events:
            self.announce_geofence_event(event)

    async def handle_geofence_event(self, connection: ClientConnection, data: Dict[str, Any]):
        guard_id = self._require_guard(connection, data)
        payload = GeofenceEventCreate.model_validate({**data, "guardId": guard_id})

        async with self.session_factory() as db:
            event = await self.tracking_service.record_geofence_event(db, payload)

        self.announce_geofence_event(event)

    async def handle_emergency_alert(self, connection: ClientConnection, data: Dict[str, Any]):
        guard_id = self._require_guard(connection, data)
        request = EmergencyRequest.model_validate({
            **data,
            "type": data.get("type") or EmergencyType.PANIC,
            "severity": data.get("severity") or EmergencySeverity.CRITICAL,
        })

        async with self.session_factory() as db:
            alert = await self.emergency_service.trigger(
                db,
                guard_id,
                request.type,
                request.severity,
                request.location,
                message=request.message,
                shift_id=request.shift_id
            )

        self.announce_emergency(alert)

    async def handle_shift_status_update(self, connection: ClientConnection, data: Dict[str, Any]):
        guard_id = self._require_guard(connection, data)
        update = {**data, "guardId": guard_id}

        self.registry.broadcast(ADMINS, "shift_status_changed", update)
        logger.info(f"Shift status update: Guard {guard_id}, Shift {data.get('shiftId')}, Status: {data.get('status')}")

    async def handle_request_live_locations(self, connection: ClientConnection, data: Dict[str, Any]):
        async with self.session_factory() as db:
            company_id = None
            if connection.role != UserRole.SUPER_ADMIN:
                user = await db.get(User, connection.user_id)
                company_id = await get_user_company_id(db, user) if user else None
                if company_id is None:
                    raise UnauthorizedError("Not linked to a security company")

            snapshot = await self.tracking_service.get_real_time_location_data(db, company_id)

        connection.send("live_locations_data", snapshot.to_wire())

    def announce_geofence_event(self, event: GeofenceEvent) -> int:
        wire = GeofenceEventRead.model_validate(event).to_wire()
        return self.registry.broadcast(ADMINS, "geofence_event", {
            "guardId": wire["guardId"],
            "geofenceId": wire["geofenceId"],
            "eventType": wire["eventType"],
            "location": {
                "latitude": wire["latitude"],
                "longitude": wire["longitude"],
                "accuracy": wire["accuracy"],
            },
            "timestamp": wire["timestamp"],
        })

    def announce_emergency(self, alert: EmergencyAlert):
        """Admins get the full alert ahead of queued traffic; guards get a summary"""
        wire = alert.to_wire()

        self.registry.broadcast(ADMINS, "emergency_alert", {
            "guardId": alert.guard_id,
            "location": wire["location"],
            "message": alert.message,
            "timestamp": wire["createdAt"],
            "alertId": alert.id,
            "type": wire["type"],
            "severity": wire["severity"],
        }, MessagePriority.HIGH)

        self.registry.broadcast(GUARDS, "emergency_broadcast", {
            "message": f"Emergency alert from guard {alert.guard_id}",
            "location": wire["location"],
            "timestamp": wire["createdAt"],
        }, MessagePriority.HIGH)

        logger.warning(
            f"EMERGENCY ALERT from guard {alert.guard_id} at "
            f"{alert.location.latitude}, {alert.location.longitude}"
        )

    def announce_alert_update(self, event: str, alert: EmergencyAlert) -> int:
        return self.registry.broadcast(ADMINS, event, alert.to_wire())

    async def broadcast_live_locations(self) -> int:
        async with self.session_factory() as db:
            snapshot = await self.tracking_service.get_real_time_location_data(db)
        return self.registry.broadcast(ADMINS, "live_locations_update", snapshot.to_wire())

    def start_live_location_broadcast(self, interval: float = settings.LIVE_LOCATION_BROADCAST_INTERVAL):
        if self._broadcast_task is None or self._broadcast_task.done():
            self._broadcast_task = asyncio.create_task(self._live_location_loop(interval))
            logger.info("Live location broadcast started")

    async def _live_location_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                await self.broadcast_live_locations()
            except Exception:
                logger.exception("Failed to broadcast live locations")

    async def stop(self):
        if self._broadcast_task is None:
            return

        self._broadcast_task.cancel()
        try:
            await self._broadcast_task
        except asyncio.CancelledError:
            pass
        self._broadcast_task = None
        logger.info("Live location broadcast stopped")
