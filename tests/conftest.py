from datetime import datetime, timedelta

import pytest
from flask import has_app_context
from flask_jwt_extended import create_access_token
from werkzeug.security import generate_password_hash

from btween import create_app, crypto, socketio
from btween.models import db, User
from btween.store import ConversationStore


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(autouse=True)
def fast_key_backup(monkeypatch):
    monkeypatch.setattr(crypto, 'PBKDF2_ITERATIONS', 1000)


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test',
        'JWT_SECRET_KEY': 'test-jwt-secret-key-with-enough-length',
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'RETENTION_SWEEP_INTERVAL': 0,
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture
def core(app):
    return app.extensions['btween']


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(ctx, clock):
    return ConversationStore(clock=clock)


@pytest.fixture
def make_user(app):
    counter = {'n': 0}

    def create(first_name, phone, password):
        user = User(
            phone=phone,
            password_hash=generate_password_hash(password, method='pbkdf2:sha256:1000'),
            first_name=first_name,
            last_name='Tester',
        )
        db.session.add(user)
        db.session.commit()
        return user.public_id

    def make_user(first_name='Ada', phone=None, password='secret-pw'):
        counter['n'] += 1
        phone = phone or f"55500000{counter['n']:02d}"
        if has_app_context():
            return create(first_name, phone, password)
        with app.app_context():
            return create(first_name, phone, password)
    return make_user


@pytest.fixture
def token_for(app):
    def token_for(user_id):
        with app.app_context():
            return create_access_token(identity=user_id)
    return token_for


@pytest.fixture
def auth_headers(token_for):
    def auth_headers(user_id):
        return {'Authorization': f'Bearer {token_for(user_id)}'}
    return auth_headers


@pytest.fixture
def connect(app, token_for):
    clients = []

    def connect(user_id, login=True):
        sio = socketio.test_client(app, query_string=f'token={token_for(user_id)}')
        clients.append(sio)
        if login:
            sio.emit('login', user_id)
        return sio

    yield connect
    for sio in clients:
        if sio.is_connected():
            sio.disconnect()


def received(sio, name):
    return [packet['args'][0] for packet in sio.get_received() if packet['name'] == name]


def events_named(packets, name):
    return [packet['args'][0] for packet in packets if packet['name'] == name]
