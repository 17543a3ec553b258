import json
from datetime import timedelta

from flask import current_app

from fairway import db, socketio
from fairway.models import Notification, utcnow


class NotificationDispatcher:
    """Persists a notification and pushes it to the recipient's socket room.

    dispatch() never raises; a failed delivery is rolled back, logged and
    reported as False.
    """

    def dispatch(self, type: str, recipient_id: str, payload: dict) -> bool:
        try:
            now = utcnow()
            ttl_days = int(current_app.config.get('NOTIFICATION_TTL_DAYS', 30))
            note = Notification(
                user_id=recipient_id,
                type=type,
                actor_id=payload.get('actor_id'),
                actor_name=payload.get('actor_name'),
                message=payload.get('message'),
                payload=json.dumps(payload),
                created_at=now,
                expires_at=now + timedelta(days=ttl_days),
            )
            db.session.add(note)
            db.session.commit()
            socketio.emit('notification', note.to_dict(), to=f"user:{recipient_id}", namespace='/ws')
            return True
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error(f"[notify-fail] type={type} recipient={recipient_id} error={exc}")
            return False
