import logging

from .errors import ForbiddenError, ValidationError

logger = logging.getLogger(__name__)


class MessageRouter:
    """Persists messages and receipts and fans them out to every live
    connection of the users involved.

    ``emit(event, payload, to)`` delivers one event to one connection
    handle; in the app it is ``socketio.emit``.
    """

    def __init__(self, store, presence, emit):
        self.store = store
        self.presence = presence
        self.emit = emit

    def fan_out(self, user_ids, event, payload):
        delivered = 0
        for user_id in user_ids:
            for handle in self.presence.connections_for(user_id):
                self.emit(event, payload, to=handle)
                delivered += 1
        return delivered

    def send(self, chat_id, sender_id, content, nonce=None, type='text', media_url=None, client_token=None):
        chat = self.store.get_chat_for(chat_id, sender_id)
        message, recipient_id = self.store.record_message(
            chat, sender_id, content,
            nonce=nonce, type=type, media_url=media_url, client_token=client_token,
        )
        payload = message.to_dict()
        self.fan_out([sender_id], 'receive_message', payload)
        if not self.fan_out([recipient_id], 'receive_message', payload):
            logger.debug("recipient %s offline, message %s stays sent", recipient_id, payload['id'])
        return payload

    def _acknowledge(self, message_id, user_id, status):
        message = self.store.get_message(message_id)
        if message.sender_id == user_id:
            raise ValidationError(f"Senders cannot mark their own message {status}")
        if message.chat.other_user_id(user_id) is None:
            raise ForbiddenError()
        if not self.store.advance_status(message, status):
            return False
        self.fan_out([message.sender_id], 'message_status_update', {'messageId': message_id, 'status': status})
        return True

    def mark_delivered(self, message_id, user_id):
        return self._acknowledge(message_id, user_id, 'delivered')

    def mark_read(self, message_id, user_id):
        return self._acknowledge(message_id, user_id, 'read')

    def mark_chat_read(self, chat_id, user_id):
        chat = self.store.get_chat_for(chat_id, user_id)
        updated = self.store.mark_chat_read(chat, user_id)
        self.fan_out([chat.other_user_id(user_id)], 'messages_read_bulk', {'chatId': chat_id, 'readerId': user_id})
        return updated

    def add_reaction(self, message_id, user_id, emoji):
        message = self.store.get_message(message_id)
        chat = message.chat
        if chat.other_user_id(user_id) is None:
            raise ForbiddenError()
        reactions = self.store.set_reaction(message, user_id, emoji)
        payload = {'messageId': message_id, 'reactions': reactions}
        self.fan_out(chat.user_ids, 'reaction_updated', payload)
        return payload
