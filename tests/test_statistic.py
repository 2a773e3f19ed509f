import pytest

from relaygear.statistic import (
    AuthError,
    Authenticator,
    new_authenticator,
    register_authenticator_creator,
)


class _FakeAuth(Authenticator):
    def __init__(self, context):
        self.context = context
        self.users = {}
        self.closed = False

    def auth_user(self, hash):
        return self.users.get(hash)

    def add_user(self, hash):
        self.users[hash] = object()

    def del_user(self, hash):
        del self.users[hash]

    def list_users(self):
        return list(self.users.values())

    def close(self):
        self.closed = True


class _Context:
    pass


_calls = []


def _creator(context):
    _calls.append(context)
    return _FakeAuth(context)


def _failing_creator(context):
    raise RuntimeError("boom")


register_authenticator_creator("STATFAKE", _creator)
register_authenticator_creator("STATBROKEN", _failing_creator)


def test_lookup_is_case_insensitive_and_cached():
    context = _Context()
    first = new_authenticator(context, "statfake")
    second = new_authenticator(context, "StatFake")
    assert first is second
    assert first.context is context
    assert _calls.count(context) == 1


def test_each_context_gets_its_own_authenticator():
    a = new_authenticator(_Context(), "STATFAKE")
    b = new_authenticator(_Context(), "STATFAKE")
    assert a is not b
    assert a.context is not b.context


def test_unknown_driver_raises():
    with pytest.raises(AuthError, match="auth driver name nope not found"):
        new_authenticator(_Context(), "nope")


def test_creator_failure_is_not_cached():
    context = _Context()
    with pytest.raises(RuntimeError):
        new_authenticator(context, "statbroken")
    auth = new_authenticator(context, "statfake")
    assert auth.context is context


def test_context_manager_closes():
    with new_authenticator(_Context(), "statfake") as auth:
        assert auth.closed is False
    assert auth.closed is True