import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from login_guard.storage import SessionStatus, UpdateResult, looks_like_token


def _new(store, ttl=900):
    return store.create("203.0.113.10", "desktop-browser", ttl)


def test_create_then_get_is_pending(store, clock):
    token = _new(store)
    sess = store.get(token)

    assert looks_like_token(token)
    assert sess is not None
    assert sess.status == SessionStatus.PENDING
    assert sess.challenge_code is None
    assert sess.origin_ip == "203.0.113.10"
    assert sess.origin_agent == "desktop-browser"
    assert sess.created_at == clock.now()
    assert sess.expires_at == clock.now() + 900
    assert clock.now() < sess.expires_at


def test_tokens_are_unique(store):
    tokens = {_new(store) for _ in range(50)}
    assert len(tokens) == 50


def test_unknown_token_is_not_found(store):
    assert store.get("0" * 64) is None
    res = store.conditional_update("0" * 64, {SessionStatus.PENDING}, status=SessionStatus.CANCELLED)
    assert res == UpdateResult.NOT_FOUND


def test_expired_session_reads_as_not_found_regardless_of_status(store, clock):
    token = _new(store, ttl=60)
    assert store.conditional_update(
        token, {SessionStatus.PENDING}, status=SessionStatus.NUMBER_ASSIGNED, challenge_code="1234"
    ) == UpdateResult.OK

    clock.advance(59)
    assert store.get(token) is not None

    clock.advance(1)
    assert store.get(token) is None
    res = store.conditional_update(token, {SessionStatus.NUMBER_ASSIGNED}, status=SessionStatus.CONFIRMED)
    assert res == UpdateResult.NOT_FOUND


def test_conditional_update_applies_only_from_expected_status(store):
    token = _new(store)

    res = store.conditional_update(token, {SessionStatus.NUMBER_ASSIGNED}, status=SessionStatus.CONFIRMED)
    assert res == UpdateResult.CONFLICT
    assert store.get(token).status == SessionStatus.PENDING

    res = store.conditional_update(
        token, {SessionStatus.PENDING}, status=SessionStatus.NUMBER_ASSIGNED, challenge_code="0420"
    )
    assert res == UpdateResult.OK
    sess = store.get(token)
    assert sess.status == SessionStatus.NUMBER_ASSIGNED
    assert sess.challenge_code == "0420"


def test_challenge_code_is_set_at_most_once(store):
    token = _new(store)
    assert store.conditional_update(
        token, {SessionStatus.PENDING}, challenge_code="1111"
    ) == UpdateResult.OK

    res = store.conditional_update(token, {SessionStatus.PENDING}, challenge_code="2222")
    assert res == UpdateResult.CONFLICT
    assert store.get(token).challenge_code == "1111"


def test_choices_are_set_at_most_once(store):
    token = _new(store)
    first = ["1111", "2222", "3333", "4444", "5555"]
    assert store.conditional_update(token, {SessionStatus.PENDING}, choices=first) == UpdateResult.OK
    assert store.conditional_update(
        token, {SessionStatus.PENDING}, choices=["9999"] * 5
    ) == UpdateResult.CONFLICT
    assert store.get(token).choices == first


def test_wrong_attempt_counter_respects_cap(store):
    token = _new(store)
    for _ in range(2):
        assert store.conditional_update(
            token, {SessionStatus.PENDING}, add_wrong_attempt=True, max_wrong_attempts=2
        ) == UpdateResult.OK

    assert store.conditional_update(
        token, {SessionStatus.PENDING}, add_wrong_attempt=True, max_wrong_attempts=2
    ) == UpdateResult.CONFLICT
    assert store.get(token).wrong_attempts == 2

    res = store.conditional_update(
        token, {SessionStatus.PENDING}, status=SessionStatus.USED, max_wrong_attempts=2
    )
    assert res == UpdateResult.CONFLICT


def test_update_without_mutation_is_rejected(store):
    token = _new(store)
    with pytest.raises(ValueError):
        store.conditional_update(token, {SessionStatus.PENDING})


def test_sweep_removes_only_expired(store, clock):
    old = _new(store, ttl=60)
    clock.advance(30)
    fresh = _new(store, ttl=60)
    clock.advance(30)

    assert store.sweep_expired() == 1
    assert store.get(old) is None
    assert store.get(fresh) is not None


def test_concurrent_transitions_have_a_single_winner(store):
    token = _new(store)
    store.conditional_update(
        token, {SessionStatus.PENDING}, status=SessionStatus.NUMBER_ASSIGNED, challenge_code="4821"
    )

    workers = 8
    barrier = threading.Barrier(workers)
    targets = [SessionStatus.CONFIRMED, SessionStatus.CANCELLED] * (workers // 2)

    def attempt(target):
        barrier.wait()
        return store.conditional_update(token, {SessionStatus.NUMBER_ASSIGNED}, status=target)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(attempt, targets))

    assert results.count(UpdateResult.OK) == 1
    assert all(r in (UpdateResult.OK, UpdateResult.CONFLICT) for r in results)

    winner = targets[results.index(UpdateResult.OK)]
    assert store.get(token).status == winner
