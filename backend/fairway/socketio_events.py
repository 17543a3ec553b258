from flask_socketio import join_room, leave_room, emit
from flask_login import current_user


def handle_connect():
    # Signed-in sockets receive their own notifications
    if current_user and current_user.is_authenticated:
        join_room(f"user:{current_user.player_id}")
    emit('connected', {'message': 'Connected to /ws'})


def handle_join_round(data):
    round_id = (data or {}).get('round_id')
    if not round_id:
        emit('error', {'message': 'round_id is required'})
        return
    room = f"round:{round_id}"
    join_room(room)
    emit('joined', {'room': room})


def handle_leave_round(data):
    round_id = (data or {}).get('round_id')
    if not round_id:
        emit('error', {'message': 'round_id is required'})
        return
    room = f"round:{round_id}"
    leave_room(room)
    emit('left', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    from fairway import socketio

    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('join_round', handle_join_round, namespace='/ws')
    socketio.on_event('leave_round', handle_leave_round, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        # Test-only mirror on default namespace
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('join_round', handle_join_round, namespace='/')
        socketio.on_event('leave_round', handle_leave_round, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
