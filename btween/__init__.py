import logging
import os
from datetime import timedelta
from typing import NamedTuple

from flask import Flask
from flask_socketio import SocketIO
from flask_jwt_extended import JWTManager
from flask_cors import CORS

from .models import db
from .presence import PresenceRegistry
from .router import MessageRouter
from .store import ConversationStore

socketio = SocketIO()
jwt = JWTManager()

# handlers must be registered before the first init_app so every app gets them
from .sockets import events  # noqa: E402,F401

ALLOWED_UPLOAD_MIME_TYPES = [
    'image/jpeg', 'image/png', 'image/gif', 'image/webp',
    'audio/webm', 'audio/ogg', 'audio/wav', 'audio/mpeg', 'audio/mp4',
]


class Core(NamedTuple):
    presence: PresenceRegistry
    store: ConversationStore
    router: MessageRouter


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_mapping(
        SECRET_KEY='dev',
        JWT_SECRET_KEY='dev-jwt',
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(hours=12),
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{os.path.join(app.instance_path, 'btween.db')}",
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        MESSAGE_TTL_SECONDS=24 * 60 * 60,
        RETENTION_SWEEP_INTERVAL=60,
        MAX_CONTENT_LENGTH=10 * 1024 * 1024,
        UPLOAD_ALLOWED_MIME_TYPES=ALLOWED_UPLOAD_MIME_TYPES,
        CORS_ORIGINS='*',
        LOG_LEVEL='INFO',
    )
    app.config.from_prefixed_env('BTWEEN')
    if test_config is not None:
        app.config.update(test_config)

    logging.getLogger(__name__).setLevel(app.config['LOG_LEVEL'])

    if not os.path.exists(app.instance_path):
        os.makedirs(app.instance_path)

    CORS(app, origins=app.config['CORS_ORIGINS'])
    db.init_app(app)
    jwt.init_app(app)
    socketio.init_app(app, cors_allowed_origins=app.config['CORS_ORIGINS'])

    presence = PresenceRegistry()
    store = ConversationStore(ttl=timedelta(seconds=app.config['MESSAGE_TTL_SECONDS']))
    app.extensions['btween'] = Core(
        presence=presence,
        store=store,
        router=MessageRouter(store, presence, socketio.emit),
    )

    with app.app_context():
        from .api import routes as api_routes

        app.register_blueprint(api_routes.api_bp, url_prefix='/api')

        db.create_all()

    from .retention import start_retention_sweep
    start_retention_sweep(app, socketio)

    return app
