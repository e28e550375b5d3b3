from datetime import timedelta

import pytest

from btween import retention, socketio
from btween.models import Message, Reaction, db
from btween.retention import _sweep_forever, start_retention_sweep, sweep_once


def test_sweep_removes_expired_messages(app, core, make_user, clock):
    alice, bob = make_user('Alice'), make_user('Bob')
    with app.app_context():
        core.store.clock = clock
        chat, _ = core.store.get_or_create_chat(alice, bob)
        core.store.record_message(chat, alice, 'old')
        clock.advance(hours=23)
        core.store.record_message(chat, bob, 'fresh')
        clock.advance(hours=1, seconds=1)

    assert sweep_once(app) == 1
    with app.app_context():
        assert [m.content for m in Message.query.all()] == ['fresh']


def test_sweep_with_nothing_to_do(app):
    assert sweep_once(app) == 0


def test_expiry_is_a_day_after_sending(app, core, make_user, clock):
    alice, bob = make_user('Alice'), make_user('Bob')
    with app.app_context():
        core.store.clock = clock
        chat, _ = core.store.get_or_create_chat(alice, bob)
        message, _ = core.store.record_message(chat, alice, 'hi')
        assert message.expires_at - message.created_at == timedelta(hours=24)


def test_sweep_disabled_by_zero_interval(app):
    assert start_retention_sweep(app, socketio) is None


class StopSweep(Exception):
    pass


class Rounds:
    """Stands in for socketio in _sweep_forever; stops after ``n`` rounds."""

    def __init__(self, n):
        self.left = n

    def sleep(self, seconds):
        if not self.left:
            raise StopSweep()
        self.left -= 1


def test_sweep_keeps_going_after_database_errors(app, core, make_user, clock):
    alice, bob = make_user('Alice'), make_user('Bob')
    with app.app_context():
        core.store.clock = clock
        chat, _ = core.store.get_or_create_chat(alice, bob)
        core.store.record_message(chat, alice, 'old')
        clock.advance(hours=25)
        Reaction.__table__.drop(db.engine)

    with pytest.raises(StopSweep):
        _sweep_forever(app, Rounds(3), 60)

    with app.app_context():
        assert Message.query.count() == 1
        Reaction.__table__.create(db.engine)
    assert sweep_once(app) == 1


def test_sweep_keeps_going_after_unexpected_errors(app, monkeypatch):
    calls = []

    def flaky(app):
        calls.append(app)
        raise RuntimeError('boom')

    monkeypatch.setattr(retention, 'sweep_once', flaky)
    with pytest.raises(StopSweep):
        _sweep_forever(app, Rounds(3), 60)
    assert len(calls) == 3
