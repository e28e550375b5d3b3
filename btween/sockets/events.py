import logging

from flask import current_app, request, session
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from flask_socketio import emit, join_room
from jwt.exceptions import PyJWTError

from .. import socketio
from ..errors import BtweenError, ForbiddenError, PersistenceError
from ..schemas import (
    AddReactionEvent, JoinRoomEvent, LoginEvent, MessageDeliveredEvent, MessageReadEvent,
    SendMessageEvent, StopTypingEvent, TypingEvent, parse_event,
)

logger = logging.getLogger(__name__)


def _core():
    return current_app.extensions['btween']


def get_user_id_from_token(token):
    if not token:
        return None
    try:
        return decode_token(token)['sub']
    except (PyJWTError, JWTExtendedException, KeyError):
        return None


@socketio.on('connect')
def on_connect(auth=None):
    token = request.args.get('token') or (auth or {}).get('token')
    user_id = get_user_id_from_token(token)
    if not user_id:
        return False
    session['user_id'] = user_id


@socketio.on('disconnect')
def on_disconnect(*args):
    user_id = _core().presence.unregister(request.sid)
    if not user_id:
        return
    try:
        _core().store.touch_last_seen(user_id)
    except PersistenceError:
        # logged by the store; the user is offline either way
        logger.warning("last seen for %s not saved", user_id)
    finally:
        socketio.emit('user_offline', user_id)


def on_login(event):
    presence = _core().presence
    if presence.register(event.user_id, request.sid):
        socketio.emit('user_online', event.user_id)
    emit('online_users', sorted(presence.all_online_user_ids()))


def on_join_room(event):
    _core().store.get_chat_for(event.chat_id, session['user_id'])
    join_room(event.chat_id)


def on_typing(event):
    _core().store.get_chat_for(event.chat_id, event.user_id)
    name = 'stop_typing' if isinstance(event, StopTypingEvent) else 'typing'
    emit(name, {'chatId': event.chat_id, 'userId': event.user_id}, to=event.chat_id, include_self=False)


def on_send_message(event):
    _core().router.send(
        event.chat_id, event.sender_id, event.content,
        nonce=event.nonce, type=event.type, media_url=event.media_url, client_token=event.client_token,
    )


def on_message_delivered(event):
    _core().router.mark_delivered(event.message_id, event.user_id)


def on_message_read(event):
    if event.message_id:
        _core().router.mark_read(event.message_id, event.user_id)
    else:
        _core().router.mark_chat_read(event.chat_id, event.user_id)


def on_add_reaction(event):
    _core().router.add_reaction(event.message_id, event.user_id, event.emoji)


HANDLERS = {
    LoginEvent: on_login,
    JoinRoomEvent: on_join_room,
    TypingEvent: on_typing,
    StopTypingEvent: on_typing,
    SendMessageEvent: on_send_message,
    MessageDeliveredEvent: on_message_delivered,
    MessageReadEvent: on_message_read,
    AddReactionEvent: on_add_reaction,
}


def _acting_user(event):
    return getattr(event, 'sender_id', None) or getattr(event, 'user_id', None)


@socketio.on('*')
def dispatch(name, payload=None):
    try:
        event = parse_event(name, payload)
        acting_user = _acting_user(event)
        if acting_user is not None and acting_user != session.get('user_id'):
            raise ForbiddenError("Cannot act on behalf of another user")
        HANDLERS[type(event)](event)
    except BtweenError as e:
        logger.info("rejected %s from %s: %s", name, request.sid, e.message)
        emit('error', {'event': name, **e.to_dict()})
