"""
WebSocket Manager for the roulette tables
Socket.IO mirror of the SSE streams: one room per mesa type, same event names.
"""

from flask_socketio import emit, join_room, leave_room
from flask_jwt_extended import decode_token
from flask import current_app, request
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)

def room_for(mesa_type):
    return f'roulette_{mesa_type}'

class WebSocketManager:
    def __init__(self, app=None, socketio=None, engine=None):
        self.socketio = socketio
        self.engine = engine
        self.connected_clients = {}  # socket_id -> {user_id, rooms, connected_at}

        if app and socketio:
            self.init_app(app)

    def init_app(self, app, socketio=None, engine=None):
        """Initialize WebSocket handlers and subscribe to engine events"""
        if socketio is not None:
            self.socketio = socketio
        if engine is not None:
            self.engine = engine

        self.socketio.on_event('connect', self.handle_connect)
        self.socketio.on_event('disconnect', self.handle_disconnect)
        self.socketio.on_event('join_roulette', self.handle_join_roulette)
        self.socketio.on_event('leave_roulette', self.handle_leave_roulette)

        if self.engine is not None:
            self.engine.broadcaster.add_listener(self.broadcast_event)

    def authenticate_user(self, auth_token=None):
        """User id from a JWT passed as auth token or cookie. Watching the tables needs no login."""
        try:
            if auth_token:
                if auth_token.startswith('Bearer '):
                    auth_token = auth_token[7:]
                token_data = decode_token(auth_token)
                user_id = token_data.get('sub')
                if user_id:
                    return int(user_id)

            access_token_cookie = request.cookies.get('access_token_cookie')
            if access_token_cookie:
                token_data = decode_token(access_token_cookie)
                user_id = token_data.get('sub')
                if user_id:
                    return int(user_id)

            return None
        except Exception as e:
            logger.warning(f"WebSocket authentication failed: {str(e)}")
            return None

    def handle_connect(self, auth=None, namespace=None):
        """Handle WebSocket connection"""
        auth_token = request.args.get('token') or (auth.get('token') if auth else None)
        user_id = self.authenticate_user(auth_token)

        socket_id = request.sid
        self.connected_clients[socket_id] = {
            'user_id': user_id,
            'rooms': set(),
            'connected_at': datetime.now(timezone.utc)
        }

        logger.info(f"Client {socket_id} connected via WebSocket (user: {user_id})")
        emit('connection_status', {'status': 'connected', 'user_id': user_id})
        return True

    def handle_disconnect(self, namespace=None):
        """Handle WebSocket disconnection"""
        client = self.connected_clients.pop(request.sid, None)
        if client:
            logger.info(f"Client {request.sid} disconnected from WebSocket (rooms: {sorted(client['rooms'])})")

    def handle_join_roulette(self, data=None):
        """Join the room of a mesa type and receive its snapshot first"""
        mesa_type = str((data or {}).get('type') or '')
        if not self.engine or mesa_type not in self.engine.tables:
            emit('error', {'message': f"Unknown roulette type '{mesa_type}'"})
            return

        room_name = room_for(mesa_type)
        table = self.engine.tables[mesa_type]
        # Joining under the table lock: no event slips between the snapshot and the room
        with table.locked():
            join_room(room_name)
            payload = table.stream_snapshot()
            payload['seq'] = self.engine.broadcaster.current_seq(mesa_type)
            emit('snapshot', payload)

        client = self.connected_clients.get(request.sid)
        if client is not None:
            client['rooms'].add(room_name)
        logger.info(f"Client {request.sid} joined room: {room_name}")

    def handle_leave_roulette(self, data=None):
        """Leave one mesa type room, or every room when no type is given"""
        client = self.connected_clients.get(request.sid)
        mesa_type = (data or {}).get('type')

        if mesa_type:
            rooms = [room_for(mesa_type)]
        else:
            rooms = list(client['rooms']) if client else []

        for room_name in rooms:
            leave_room(room_name)
            if client is not None:
                client['rooms'].discard(room_name)
        logger.info(f"Client {request.sid} left rooms: {rooms}")
        emit('rooms_left', {'rooms': rooms})

    # Event Broadcasting
    def broadcast_event(self, event):
        """Broadcaster listener: re-emits a table event to its Socket.IO room"""
        if not self.socketio or event.mesa_type is None:
            return

        self.socketio.emit(event.name, event.to_dict(), room=room_for(event.mesa_type))
        logger.debug(f"Broadcasted {event.name} #{event.seq} to room {room_for(event.mesa_type)}")

    def get_connected_clients_count(self):
        """Get total number of connected clients"""
        return len(self.connected_clients)

    def get_room_clients_count(self, mesa_type):
        """Get number of clients in a mesa type room"""
        room_name = room_for(mesa_type)
        return sum(1 for client in self.connected_clients.values() if room_name in client['rooms'])
