import logging
from contextlib import contextmanager
from datetime import timedelta

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from .errors import ForbiddenError, NotFoundError, PersistenceError, UpgradeRaceError, ValidationError
from .models import (
    MESSAGE_STATUSES, BlockList, Chat, ChatUnread, Message, Reaction, User, db, utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)
STATUS_RANK = {status: rank for rank, status in enumerate(MESSAGE_STATUSES)}


class ConversationStore:
    """Chats, messages and the per-user bookkeeping around them.

    Messages expire ``ttl`` after creation. Reads never return an expired
    message, and purge_expired() deletes them for good; a background sweep
    calls it periodically.
    """

    def __init__(self, ttl=DEFAULT_TTL, clock=utcnow):
        self.ttl = ttl
        self.clock = clock

    @contextmanager
    def _writing(self, what):
        """Run the block's statements and commit them as one transaction.
        Any database error rolls everything back and surfaces as
        PersistenceError."""
        try:
            yield
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.exception("failed to %s", what)
            raise PersistenceError(f"Could not {what}") from e

    # --- users ---

    def get_user(self, user_id):
        user = User.query.filter_by(public_id=user_id).first()
        if user is None:
            raise NotFoundError("User not found")
        return user

    def find_user_by_phone(self, phone):
        user = User.query.filter_by(phone=phone).first()
        if user is None:
            raise NotFoundError("User not found")
        return user

    def touch_last_seen(self, user_id):
        with self._writing("update last seen"):
            User.query.filter_by(public_id=user_id).update({'last_seen': self.clock()})

    def blocked_ids(self, user_id):
        return {b.blocked_id for b in BlockList.query.filter_by(blocker_id=user_id)}

    def is_blocked(self, blocker_id, blocked_id):
        return BlockList.query.filter_by(blocker_id=blocker_id, blocked_id=blocked_id).first() is not None

    def block(self, blocker_id, blocked_id):
        if blocker_id == blocked_id:
            raise ValidationError("Cannot block yourself")
        self.get_user(blocked_id)
        if self.is_blocked(blocker_id, blocked_id):
            return False
        with self._writing("block user"):
            db.session.add(BlockList(blocker_id=blocker_id, blocked_id=blocked_id))
        return True

    def unblock(self, blocker_id, blocked_id):
        with self._writing("unblock user"):
            removed = BlockList.query.filter_by(blocker_id=blocker_id, blocked_id=blocked_id).delete()
        return bool(removed)

    def save_key_backup(self, user_id, public_key, encrypted_private_key, iv, only_if_missing=False):
        """Store a user's public key and encrypted private key.

        With only_if_missing, the write only lands if no backup exists yet;
        UpgradeRaceError means another device got there first.
        """
        query = User.query.filter_by(public_id=user_id)
        if only_if_missing:
            query = query.filter(User.encrypted_private_key.is_(None))
        with self._writing("save key backup"):
            updated = query.update({
                'public_key': public_key,
                'encrypted_private_key': encrypted_private_key,
                'iv': iv,
            }, synchronize_session=False)
        if not updated:
            if only_if_missing:
                raise UpgradeRaceError()
            raise NotFoundError("User not found")

    # --- chats ---

    def get_chat(self, chat_id):
        chat = Chat.query.filter_by(public_id=chat_id).first()
        if chat is None:
            raise NotFoundError("Chat not found")
        return chat

    def get_chat_for(self, chat_id, user_id):
        chat = self.get_chat(chat_id)
        if chat.other_user_id(user_id) is None:
            raise ForbiddenError()
        return chat

    def get_or_create_chat(self, user_id, other_id):
        if user_id == other_id:
            raise ValidationError("Cannot start conversation with self")
        user_a_id, user_b_id = sorted((user_id, other_id))
        chat = Chat.query.filter_by(user_a_id=user_a_id, user_b_id=user_b_id).first()
        if chat is not None:
            return chat, False
        now = self.clock()
        chat = Chat(user_a_id=user_a_id, user_b_id=user_b_id, created_at=now, updated_at=now)
        with self._writing("create chat"):
            db.session.add(chat)
            db.session.flush()
            db.session.add_all([
                ChatUnread(chat_id=chat.id, user_id=user_a_id, count=0),
                ChatUnread(chat_id=chat.id, user_id=user_b_id, count=0),
            ])
        return chat, True

    def unread_count(self, chat, user_id):
        row = ChatUnread.query.filter_by(chat_id=chat.id, user_id=user_id).first()
        return row.count if row else 0

    def reset_unread(self, chat, user_id):
        with self._writing("reset unread counter"):
            updated = ChatUnread.query.filter_by(chat_id=chat.id, user_id=user_id).update({'count': 0})
            if not updated:
                db.session.add(ChatUnread(chat_id=chat.id, user_id=user_id, count=0))

    def _increment_unread(self, chat, user_id):
        updated = ChatUnread.query.filter_by(chat_id=chat.id, user_id=user_id).update(
            {'count': ChatUnread.count + 1}, synchronize_session=False)
        if not updated:
            db.session.add(ChatUnread(chat_id=chat.id, user_id=user_id, count=1))

    def list_chats(self, user_id):
        """One chat per counterpart, blocked counterparts left out, most
        recently updated first."""
        blocked = self.blocked_ids(user_id)
        chats = Chat.query.filter(
            or_(Chat.user_a_id == user_id, Chat.user_b_id == user_id)
        ).order_by(Chat.updated_at.desc(), Chat.id.desc()).all()

        seen = set()
        unique_chats = []
        for chat in chats:
            other_id = chat.other_user_id(user_id)
            if other_id in blocked or other_id in seen:
                continue
            seen.add(other_id)
            unique_chats.append(chat)
        return unique_chats

    def describe_chat(self, chat, viewer_id):
        users = User.query.filter(User.public_id.in_(chat.user_ids)).all()
        return {
            'id': chat.public_id,
            'userIds': chat.user_ids,
            'participants': [u.to_public_dict() for u in users],
            'lastMessage': chat.last_message_dict(),
            'unreadCount': self.unread_count(chat, viewer_id),
            'updatedAt': chat.updated_at.isoformat() if chat.updated_at else None,
        }

    def clear_chat(self, chat):
        message_ids = db.select(Message.id).where(Message.chat_id == chat.id)
        with self._writing("clear chat"):
            Reaction.query.filter(Reaction.message_id.in_(message_ids)).delete(synchronize_session=False)
            Message.query.filter(Message.chat_id == chat.id).delete(synchronize_session=False)
            chat.last_message_content = None
            chat.last_message_sender_id = None
            chat.last_message_at = None
            chat.last_message_nonce = None

    # --- messages ---

    def _next_timestamp(self, chat):
        now = self.clock()
        latest = db.session.query(db.func.max(Message.created_at)).filter(Message.chat_id == chat.id).scalar()
        if latest is not None and now <= latest:
            now = latest + timedelta(microseconds=1)
        return now

    def record_message(self, chat, sender_id, content, nonce=None, type='text', media_url=None, client_token=None):
        """Persist a message and update the chat in one transaction: the
        counterpart's unread counter goes up by one and the last-message
        summary is overwritten. Returns (message, recipient_id)."""
        recipient_id = chat.other_user_id(sender_id)
        if recipient_id is None:
            raise ForbiddenError()
        with self._writing("save message"):
            created_at = self._next_timestamp(chat)
            message = Message(
                chat=chat,
                sender_id=sender_id,
                content=content,
                nonce=nonce or None,
                type=type,
                media_url=media_url,
                client_token=client_token,
                status='sent',
                created_at=created_at,
                expires_at=created_at + self.ttl,
            )
            db.session.add(message)
            chat.last_message_content = content
            chat.last_message_sender_id = sender_id
            chat.last_message_at = created_at
            chat.last_message_nonce = nonce or None
            chat.updated_at = created_at
            self._increment_unread(chat, recipient_id)
        return message, recipient_id

    def _live_messages(self):
        return Message.query.filter(Message.expires_at > self.clock())

    def get_message(self, message_id):
        message = self._live_messages().filter(Message.public_id == message_id).first()
        if message is None:
            raise NotFoundError("Message not found")
        return message

    def history(self, chat):
        return self._live_messages().filter(Message.chat_id == chat.id).order_by(
            Message.created_at, Message.id).all()

    def advance_status(self, message, status):
        """Move a message forward to status. Statuses never go back, so
        delivered after read is a no-op. Returns True if it changed."""
        if status not in STATUS_RANK:
            raise ValidationError(f"Unknown status {status!r}")
        lower = [s for s in MESSAGE_STATUSES if STATUS_RANK[s] < STATUS_RANK[status]]
        values = {'status': status}
        if status == 'read':
            values['read'] = True
        with self._writing(f"mark message {status}"):
            changed = Message.query.filter(
                Message.id == message.id, Message.status.in_(lower)
            ).update(values, synchronize_session=False)
        return bool(changed)

    def mark_chat_read(self, chat, reader_id):
        """Read every unread counterpart message in chat and zero the
        reader's unread counter. Returns the number of messages updated."""
        with self._writing("mark chat read"):
            updated = self._live_messages().filter(
                Message.chat_id == chat.id,
                Message.sender_id != reader_id,
                Message.read.is_(False),
            ).update({'status': 'read', 'read': True}, synchronize_session=False)
            ChatUnread.query.filter_by(chat_id=chat.id, user_id=reader_id).update({'count': 0})
        return updated

    def set_reaction(self, message, user_id, emoji):
        """One reaction per user per message; a new one replaces the old."""
        with self._writing("save reaction"):
            reaction = Reaction.query.filter_by(message_id=message.id, user_id=user_id).first()
            if reaction is None:
                db.session.add(Reaction(message_id=message.id, user_id=user_id, emoji=emoji))
            else:
                reaction.emoji = emoji
        db.session.refresh(message)
        return [r.to_dict() for r in message.reactions]

    def purge_expired(self, now=None):
        now = now or self.clock()
        expired = db.select(Message.id).where(Message.expires_at <= now)
        with self._writing("purge expired messages"):
            Reaction.query.filter(Reaction.message_id.in_(expired)).delete(synchronize_session=False)
            deleted = Message.query.filter(Message.expires_at <= now).delete(synchronize_session=False)
        return deleted

    def save(self, instance, what):
        with self._writing(what):
            db.session.add(instance)
        return instance

    def update_profile(self, user, fields):
        with self._writing("update profile"):
            for field, value in fields.items():
                setattr(user, field, value)
        return user
