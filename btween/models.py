from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone
import uuid

db = SQLAlchemy()

MESSAGE_STATUSES = ('sent', 'delivered', 'read')
MESSAGE_TYPES = ('text', 'image', 'audio')


def new_public_id():
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    public_id = db.Column(db.String(36), unique=True, nullable=False, default=new_public_id)
    phone = db.Column(db.String(20), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    display_name = db.Column(db.String(200))
    bio = db.Column(db.String(200), default='')
    profile_pic = db.Column(db.String(500), default='')
    public_key = db.Column(db.String(64), default='')
    encrypted_private_key = db.Column(db.Text, nullable=True)
    iv = db.Column(db.String(32), nullable=True)
    last_seen = db.Column(db.DateTime, default=utcnow)
    created_at = db.Column(db.DateTime, default=utcnow)

    @property
    def name(self):
        return self.display_name or f"{self.first_name} {self.last_name}"

    def to_public_dict(self):
        return {
            'id': self.public_id,
            'name': self.name,
            'firstName': self.first_name,
            'lastName': self.last_name,
            'phone': self.phone,
            'profilePic': self.profile_pic,
            'bio': self.bio,
            'publicKey': self.public_key,
            'lastSeen': self.last_seen.isoformat() if self.last_seen else None,
        }

    def to_key_backup_dict(self):
        return {
            'public_key': self.public_key,
            'encrypted_private_key': self.encrypted_private_key,
            'iv': self.iv,
        }


class BlockList(db.Model):
    __tablename__ = 'block_list'
    __table_args__ = (db.UniqueConstraint('blocker_id', 'blocked_id'),)
    id = db.Column(db.Integer, primary_key=True)
    blocker_id = db.Column(db.String(36), nullable=False, index=True)
    blocked_id = db.Column(db.String(36), nullable=False)


class Chat(db.Model):
    __tablename__ = 'chat'
    # user_a_id < user_b_id, so one row per unordered pair
    __table_args__ = (db.UniqueConstraint('user_a_id', 'user_b_id'),)
    id = db.Column(db.Integer, primary_key=True)
    public_id = db.Column(db.String(36), unique=True, nullable=False, default=new_public_id)
    user_a_id = db.Column(db.String(36), nullable=False, index=True)
    user_b_id = db.Column(db.String(36), nullable=False, index=True)
    last_message_content = db.Column(db.Text, nullable=True)
    last_message_sender_id = db.Column(db.String(36), nullable=True)
    last_message_at = db.Column(db.DateTime, nullable=True)
    last_message_nonce = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, index=True)

    @property
    def user_ids(self):
        return [self.user_a_id, self.user_b_id]

    def other_user_id(self, user_id):
        if user_id == self.user_a_id:
            return self.user_b_id
        if user_id == self.user_b_id:
            return self.user_a_id
        return None

    def last_message_dict(self):
        if self.last_message_at is None:
            return None
        return {
            'content': self.last_message_content,
            'senderId': self.last_message_sender_id,
            'timestamp': self.last_message_at.isoformat(),
            'nonce': self.last_message_nonce,
        }


class ChatUnread(db.Model):
    __tablename__ = 'chat_unread'
    __table_args__ = (db.UniqueConstraint('chat_id', 'user_id'),)
    id = db.Column(db.Integer, primary_key=True)
    chat_id = db.Column(db.Integer, db.ForeignKey('chat.id'), nullable=False)
    user_id = db.Column(db.String(36), nullable=False)
    count = db.Column(db.Integer, nullable=False, default=0)


class Message(db.Model):
    __tablename__ = 'message'
    id = db.Column(db.Integer, primary_key=True)
    public_id = db.Column(db.String(36), unique=True, nullable=False, default=new_public_id)
    chat_id = db.Column(db.Integer, db.ForeignKey('chat.id'), nullable=False, index=True)
    sender_id = db.Column(db.String(36), nullable=False)
    content = db.Column(db.Text, nullable=False)
    nonce = db.Column(db.String(64), nullable=True)
    type = db.Column(db.String(10), nullable=False, default='text')
    media_url = db.Column(db.String(500), nullable=True)
    status = db.Column(db.String(10), nullable=False, default='sent')
    read = db.Column(db.Boolean, default=False, nullable=False)
    client_token = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    chat = db.relationship('Chat')
    reactions = db.relationship('Reaction', order_by='Reaction.id', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.public_id,
            'chatId': self.chat.public_id,
            'senderId': self.sender_id,
            'content': self.content,
            'nonce': self.nonce,
            'type': self.type,
            'mediaUrl': self.media_url,
            'status': self.status,
            'read': self.read,
            'reactions': [r.to_dict() for r in self.reactions],
            'clientToken': self.client_token,
            'createdAt': self.created_at.isoformat(),
        }


class Reaction(db.Model):
    __tablename__ = 'reaction'
    __table_args__ = (db.UniqueConstraint('message_id', 'user_id'),)
    id = db.Column(db.Integer, primary_key=True)
    message_id = db.Column(db.Integer, db.ForeignKey('message.id'), nullable=False, index=True)
    user_id = db.Column(db.String(36), nullable=False)
    emoji = db.Column(db.String(32), nullable=False)

    def to_dict(self):
        return {'userId': self.user_id, 'emoji': self.emoji}


class Media(db.Model):
    __tablename__ = 'media'
    id = db.Column(db.Integer, primary_key=True)
    public_id = db.Column(db.String(36), unique=True, nullable=False, default=new_public_id)
    filename = db.Column(db.String(255), nullable=False)
    content_type = db.Column(db.String(100), nullable=False)
    data = db.Column(db.LargeBinary, nullable=False)
    size = db.Column(db.Integer, nullable=False)
    uploader_id = db.Column(db.String(36), nullable=True)
    upload_date = db.Column(db.DateTime, default=utcnow)
