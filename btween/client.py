"""
Client-side pieces of the messaging flow that do not depend on a UI:
optimistic sends and their reconciliation with the server echo, the
typing indicator debounce, and turning fetched history into displayable
text.
"""
import time
import uuid

from . import crypto

ECHO_TIMEOUT = 30.0
TYPING_IDLE = 2.0


class PendingMessage:
    def __init__(self, token, chat_id, sender_id, content, wire_content, nonce, created_at):
        self.token = token
        self.chat_id = chat_id
        self.sender_id = sender_id
        self.content = content
        self.wire_content = wire_content
        self.nonce = nonce
        self.created_at = created_at
        self.state = 'pending'
        self.message = None

    def payload(self):
        payload = {
            'chatId': self.chat_id,
            'senderId': self.sender_id,
            'content': self.wire_content,
            'clientToken': self.token,
        }
        if self.nonce:
            payload['nonce'] = self.nonce
        return payload


class Outbox:
    """Optimistic messages waiting for their server echo.

    Every composed message gets a fresh client token that the server echoes
    back in receive_message, so two sends with identical content each
    reconcile to their own placeholder. Echoes without a token (older
    servers) fall back to the oldest pending message with the same chat,
    sender and wire content. A message with no echo after ``timeout``
    seconds is marked failed and can be retried; it is never dropped.
    """

    def __init__(self, timeout=ECHO_TIMEOUT, clock=time.monotonic):
        self.timeout = timeout
        self.clock = clock
        self._pending = {}

    def compose(self, chat_id, sender_id, content, shared_secret=None):
        if shared_secret:
            sealed = crypto.encrypt(content, shared_secret)
            wire_content, nonce = sealed.ciphertext, sealed.nonce
        else:
            wire_content, nonce = content, None
        pending = PendingMessage(uuid.uuid4().hex, chat_id, sender_id, content, wire_content, nonce, self.clock())
        self._pending[pending.token] = pending
        return pending

    @property
    def pending(self):
        return [p for p in self._pending.values() if p.state == 'pending']

    @property
    def failed(self):
        return [p for p in self._pending.values() if p.state == 'failed']

    def _match_legacy(self, echo):
        candidates = [
            p for p in self._pending.values()
            if p.state != 'sent'
            and p.chat_id == echo.get('chatId')
            and p.sender_id == echo.get('senderId')
            and p.wire_content == echo.get('content')
        ]
        return min(candidates, key=lambda p: p.created_at) if candidates else None

    def reconcile(self, echo):
        """Attach a receive_message echo to its optimistic message. Returns
        the matched PendingMessage, or None for messages not sent from here."""
        token = echo.get('clientToken')
        if token:
            pending = self._pending.get(token)
        else:
            pending = self._match_legacy(echo)
        if pending is None:
            return None
        pending.state = 'sent'
        pending.message = echo
        del self._pending[pending.token]
        return pending

    def expire(self):
        """Mark pending messages whose echo is overdue as failed."""
        now = self.clock()
        expired = []
        for pending in self.pending:
            if now - pending.created_at >= self.timeout:
                pending.state = 'failed'
                expired.append(pending)
        return expired

    def retry(self, token):
        """Put a failed message back in flight under the same token."""
        pending = self._pending[token]
        pending.state = 'pending'
        pending.created_at = self.clock()
        return pending


class TypingDebouncer:
    """Emits typing once per burst of keystrokes and stop_typing after
    ``idle`` seconds without one, or right away when the message is sent."""

    def __init__(self, emit, chat_id, user_id, idle=TYPING_IDLE, clock=time.monotonic):
        self.emit = emit
        self.chat_id = chat_id
        self.user_id = user_id
        self.idle = idle
        self.clock = clock
        self.typing = False
        self._last_keystroke = None

    def _payload(self):
        return {'chatId': self.chat_id, 'userId': self.user_id}

    def keystroke(self):
        self._last_keystroke = self.clock()
        if not self.typing:
            self.typing = True
            self.emit('typing', self._payload())

    def poll(self):
        if self.typing and self.clock() - self._last_keystroke >= self.idle:
            self.stop()

    def stop(self):
        if self.typing:
            self.typing = False
            self.emit('stop_typing', self._payload())

    def sent(self):
        self.stop()


def decrypt_history(messages, shared_secret):
    """Copies of messages with content replaced by displayable text."""
    return [
        dict(message, content=crypto.decrypt_for_display(message['content'], message.get('nonce'), shared_secret))
        for message in messages
    ]
