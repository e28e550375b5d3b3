import pytest

from btween import crypto
from btween.client import Outbox, TypingDebouncer, decrypt_history


class Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def secret():
    alice, bob = crypto.generate_key_pair(), crypto.generate_key_pair()
    return crypto.derive_shared_secret(alice.private_key, bob.public_key)


def echo_for(pending, token=True):
    echo = {'id': 'server-id', 'chatId': pending.chat_id, 'senderId': pending.sender_id,
            'content': pending.wire_content, 'nonce': pending.nonce}
    if token:
        echo['clientToken'] = pending.token
    return echo


def test_identical_sends_reconcile_to_their_own_placeholder(ticker):
    outbox = Outbox(clock=ticker)
    first = outbox.compose('chat', 'alice', 'ok')
    ticker.now += 1
    second = outbox.compose('chat', 'alice', 'ok')
    assert first.token != second.token

    assert outbox.reconcile(echo_for(second)) is second
    assert outbox.pending == [first]
    assert outbox.reconcile(echo_for(first)) is first
    assert outbox.pending == []


def test_echo_without_token_matches_oldest(ticker):
    outbox = Outbox(clock=ticker)
    first = outbox.compose('chat', 'alice', 'ok')
    ticker.now += 1
    outbox.compose('chat', 'alice', 'ok')

    assert outbox.reconcile(echo_for(first, token=False)) is first
    assert len(outbox.pending) == 1


def test_foreign_echo_is_ignored(ticker):
    outbox = Outbox(clock=ticker)
    outbox.compose('chat', 'alice', 'ok')
    assert outbox.reconcile({'chatId': 'chat', 'senderId': 'bob', 'content': 'ok'}) is None
    assert len(outbox.pending) == 1


def test_overdue_message_fails_and_can_be_retried(ticker):
    outbox = Outbox(timeout=30, clock=ticker)
    pending = outbox.compose('chat', 'alice', 'hello')

    ticker.now = 29
    assert outbox.expire() == []
    ticker.now = 30
    assert outbox.expire() == [pending]
    assert outbox.failed == [pending]
    assert outbox.pending == []

    outbox.retry(pending.token)
    assert outbox.pending == [pending]
    assert outbox.reconcile(echo_for(pending)) is pending
    assert pending.state == 'sent'


def test_compose_encrypts_with_shared_secret(secret):
    pending = Outbox().compose('chat', 'alice', 'top secret', shared_secret=secret)
    payload = pending.payload()
    assert payload['content'] != 'top secret'
    assert payload['clientToken'] == pending.token
    assert crypto.decrypt(payload['content'], payload['nonce'], secret) == 'top secret'


def test_plaintext_payload_has_no_nonce():
    payload = Outbox().compose('chat', 'alice', 'hi').payload()
    assert payload['content'] == 'hi'
    assert 'nonce' not in payload


def test_typing_debounce(ticker):
    sent = []
    typing = TypingDebouncer(lambda event, payload: sent.append(event), 'chat', 'alice', clock=ticker)

    for _ in range(5):
        typing.keystroke()
        ticker.now += 0.5
        typing.poll()
    assert sent == ['typing']

    ticker.now += 2
    typing.poll()
    assert sent == ['typing', 'stop_typing']

    typing.keystroke()
    typing.sent()
    typing.poll()
    assert sent == ['typing', 'stop_typing', 'typing', 'stop_typing']


def test_decrypt_history(secret):
    sealed = crypto.encrypt('hello', secret)
    messages = [
        {'id': '1', 'content': sealed.ciphertext, 'nonce': sealed.nonce},
        {'id': '2', 'content': 'legacy plaintext', 'nonce': None},
        {'id': '3', 'content': sealed.ciphertext, 'nonce': crypto.encrypt('x', secret).nonce},
    ]
    shown = [m['content'] for m in decrypt_history(messages, secret)]
    assert shown == ['hello', 'legacy plaintext', crypto.ENCRYPTED_PLACEHOLDER]
    assert messages[0]['content'] == sealed.ciphertext
