import logging

from flask import Blueprint, Response, current_app, request, jsonify
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename
from flask_jwt_extended import create_access_token, create_refresh_token, jwt_required, get_jwt_identity
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AuthenticationError, BtweenError, ConflictError, NotFoundError, PayloadTooLargeError,
    UnsupportedMediaError, UpgradeRaceError, ValidationError,
)
from ..models import db, Media, User
from ..schemas import (
    KeyBackupRequest, LoginRequest, ProfileUpdateRequest, RegisterRequest, StartChatRequest,
    parse, validate_public_id,
)

logger = logging.getLogger(__name__)

api_bp = Blueprint('api_bp', __name__)


def _core():
    return current_app.extensions['btween']


def _body(model):
    return parse(model, request.get_json(silent=True))


@api_bp.errorhandler(BtweenError)
def handle_btween_error(e):
    return jsonify(e.to_dict()), e.status_code


@api_bp.errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    return handle_btween_error(PayloadTooLargeError())


@api_bp.route('/register', methods=['POST'])
def register():
    data = _body(RegisterRequest)
    if User.query.filter_by(phone=data.phone).first():
        raise ConflictError("Phone number already registered")
    if data.email and User.query.filter_by(email=data.email.lower()).first():
        raise ConflictError("Email already registered")

    new_user = User(
        phone=data.phone,
        email=data.email.lower() if data.email else None,
        password_hash=generate_password_hash(data.password),
        first_name=data.first_name,
        last_name=data.last_name,
        profile_pic=data.profile_pic,
        public_key=data.public_key,
        encrypted_private_key=data.encrypted_private_key,
        iv=data.iv,
    )
    db.session.add(new_user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Phone number already registered")
    return jsonify({"msg": "Registration successful! Please log in.", "user": new_user.to_public_dict()}), 201


@api_bp.route('/login', methods=['POST'])
def login():
    data = _body(LoginRequest)
    user = User.query.filter_by(phone=data.phone).first()

    if not user or not check_password_hash(user.password_hash, data.password):
        raise AuthenticationError("Invalid phone number or password")

    return jsonify(
        access_token=create_access_token(identity=user.public_id),
        refresh_token=create_refresh_token(identity=user.public_id),
        user=user.to_public_dict(),
        key_backup=user.to_key_backup_dict(),
    )


@api_bp.route('/profile', methods=['GET', 'PUT'])
@jwt_required()
def profile():
    store = _core().store
    user = store.get_user(get_jwt_identity())

    if request.method == 'PUT':
        data = _body(ProfileUpdateRequest)
        store.update_profile(user, data.model_dump(exclude_none=True))

    return jsonify(user.to_public_dict())


@api_bp.route('/profile/keys', methods=['GET', 'PUT'])
@jwt_required()
def profile_keys():
    store = _core().store
    user = store.get_user(get_jwt_identity())
    if request.method == 'GET':
        return jsonify(user.to_key_backup_dict())

    data = _body(KeyBackupRequest)
    backup = (data.public_key, data.encrypted_private_key, data.iv)
    if user.encrypted_private_key is None:
        try:
            store.save_key_backup(user.public_id, *backup, only_if_missing=True)
        except UpgradeRaceError:
            logger.warning("concurrent key backup for %s, keeping the latest", user.public_id)
            store.save_key_backup(user.public_id, *backup)
    else:
        store.save_key_backup(user.public_id, *backup)
    return jsonify({"msg": "Key backup saved"})


@api_bp.route('/users/search', methods=['GET'])
@jwt_required()
def search_users():
    phone = request.args.get('phone', '')
    if not phone:
        raise ValidationError("Phone number is required")
    user = _core().store.find_user_by_phone(phone)
    return jsonify(user.to_public_dict())


@api_bp.route('/users/blocked', methods=['GET'])
@jwt_required()
def get_blocked_users():
    blocked_ids = _core().store.blocked_ids(get_jwt_identity())
    users = User.query.filter(User.public_id.in_(blocked_ids)).all() if blocked_ids else []
    return jsonify([u.to_public_dict() for u in users])


@api_bp.route('/users/<public_id>', methods=['GET'])
@jwt_required()
def get_user_details(public_id):
    user = _core().store.get_user(validate_public_id(public_id, "user id"))
    return jsonify(user.to_public_dict())


@api_bp.route('/users/<public_id>/block', methods=['POST'])
@jwt_required()
def block_user(public_id):
    if not _core().store.block(get_jwt_identity(), validate_public_id(public_id, "user id")):
        return jsonify({"msg": "User already blocked"})
    return jsonify({"msg": "User blocked successfully"})


@api_bp.route('/users/<public_id>/unblock', methods=['POST'])
@jwt_required()
def unblock_user(public_id):
    _core().store.unblock(get_jwt_identity(), validate_public_id(public_id, "user id"))
    return jsonify({"msg": "User unblocked successfully"})


@api_bp.route('/chats', methods=['GET', 'POST'])
@jwt_required()
def chats():
    store = _core().store
    current_user_id = get_jwt_identity()

    if request.method == 'POST':
        data = _body(StartChatRequest)
        target = store.find_user_by_phone(data.target_phone)
        chat, created = store.get_or_create_chat(current_user_id, target.public_id)
        return jsonify(store.describe_chat(chat, current_user_id)), 201 if created else 200

    return jsonify([store.describe_chat(chat, current_user_id) for chat in store.list_chats(current_user_id)])


def _chat_for_current_user(chat_id):
    return _core().store.get_chat_for(validate_public_id(chat_id, "chat id"), get_jwt_identity())


@api_bp.route('/chats/<chat_id>', methods=['GET'])
@jwt_required()
def get_chat(chat_id):
    chat = _chat_for_current_user(chat_id)
    return jsonify(_core().store.describe_chat(chat, get_jwt_identity()))


@api_bp.route('/chats/<chat_id>/messages', methods=['GET', 'DELETE'])
@jwt_required()
def chat_messages(chat_id):
    store = _core().store
    chat = _chat_for_current_user(chat_id)
    if request.method == 'DELETE':
        store.clear_chat(chat)
        return jsonify({"msg": "Chat cleared"})
    return jsonify([m.to_dict() for m in store.history(chat)])


@api_bp.route('/chats/<chat_id>/read', methods=['PUT'])
@jwt_required()
def mark_chat_read(chat_id):
    chat = _chat_for_current_user(chat_id)
    _core().store.reset_unread(chat, get_jwt_identity())
    return jsonify({"msg": "Chat marked as read"})


def _allowed_mime_type(mimetype):
    allowed = current_app.config['UPLOAD_ALLOWED_MIME_TYPES']
    return mimetype in allowed


@api_bp.route('/upload', methods=['POST'])
@jwt_required()
def upload():
    if 'file' not in request.files:
        raise ValidationError("No file uploaded")
    file = request.files['file']
    if file.filename == '':
        raise ValidationError("No selected file")
    if not _allowed_mime_type(file.mimetype):
        raise UnsupportedMediaError()

    data = file.read()
    media = Media(
        filename=secure_filename(file.filename) or 'upload',
        content_type=file.mimetype,
        data=data,
        size=len(data),
        uploader_id=get_jwt_identity(),
    )
    _core().store.save(media, "save upload")
    return jsonify({
        "url": f"/api/upload/file/{media.public_id}",
        "filename": media.filename,
        "mimetype": media.content_type,
        "size": media.size,
    }), 201


@api_bp.route('/upload/file/<media_id>', methods=['GET'])
def uploaded_file(media_id):
    media = Media.query.filter_by(public_id=validate_public_id(media_id, "file id")).first()
    if media is None:
        raise NotFoundError("File not found")
    return Response(media.data, mimetype=media.content_type, headers={
        'Content-Disposition': f'inline; filename="{media.filename}"',
    })
