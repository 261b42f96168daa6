from __future__ import annotations

import pytest

from relay_plugin.session_binding import ActiveUserBinding, SessionBinding


def test_login_logout_notifies_listeners():
    binding = SessionBinding()
    seen = []
    binding.add_listener(seen.append)

    active = binding.on_login({"id": 12, "username": "Kay"}, "abc")
    binding.on_logout()
    binding.on_logout()

    assert active.user_id == "12"
    assert active.display_name == "Kay"
    assert seen == [active, None]
    assert binding.is_bound is False


def test_token_can_come_from_identity():
    active = ActiveUserBinding.from_identity({"user_id": "u9", "token": "t"})

    assert active.credential == "t"
    assert active.display_name == "u9"


@pytest.mark.parametrize("identity", [{"username": "nobody"}, {"id": ""}])
def test_identity_without_id_is_rejected(identity):
    with pytest.raises(ValueError):
        ActiveUserBinding.from_identity(identity, "token")


def test_identity_without_credential_is_rejected():
    binding = SessionBinding()

    with pytest.raises(ValueError):
        binding.on_login({"id": 1})
    assert binding.current() is None


def test_invalidate_only_clears_matching_credential():
    binding = SessionBinding()
    binding.on_login({"id": 1}, "old")
    binding.on_login({"id": 1}, "new")

    assert binding.invalidate("old") is False
    assert binding.is_bound is True
    assert binding.invalidate("new") is True
    assert binding.current() is None


def test_repr_hides_credential():
    active = ActiveUserBinding.from_identity({"id": 1}, "very-secret")

    assert "very-secret" not in repr(active)


def test_listener_errors_are_contained():
    binding = SessionBinding()

    def _broken(_binding):
        raise RuntimeError("boom")

    binding.add_listener(_broken)
    binding.on_login({"id": 3}, "t")
    binding.remove_listener(_broken)
    binding.remove_listener(_broken)

    assert binding.current().user_id == "3"
