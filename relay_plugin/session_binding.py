"""Tracks which driver is logged in so forwarded records can be attributed."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Mapping, Optional

_LOGGER = logging.getLogger("Enigma.Relay.Session")

BindingListener = Callable[[Optional["ActiveUserBinding"]], None]


@dataclass(frozen=True)
class ActiveUserBinding:
    user_id: str
    display_name: str
    credential: str
    steam_id: str = ""
    discord_id: str = ""

    @classmethod
    def from_identity(cls, identity: Mapping[str, Any], credential: Optional[str] = None) -> "ActiveUserBinding":
        """Build a binding from the auth module's user payload."""
        user_id = identity.get("id", identity.get("user_id"))
        if user_id is None or str(user_id).strip() == "":
            raise ValueError("user identity has no id")
        token = credential if credential is not None else identity.get("token")
        if not token:
            raise ValueError("user identity has no session credential")
        name = identity.get("username") or identity.get("display_name") or str(user_id)
        return cls(
            user_id=str(user_id),
            display_name=str(name),
            credential=str(token),
            steam_id=str(identity.get("steam_id") or ""),
            discord_id=str(identity.get("discord_id") or ""),
        )

    def __repr__(self) -> str:  # keep the credential out of logs
        return f"ActiveUserBinding(user_id={self.user_id!r}, display_name={self.display_name!r})"


class SessionBinding:
    """Holder for the current :class:`ActiveUserBinding`.

    ``on_login``/``on_logout`` are the two synchronous signals coming from the
    auth collaborator; readers call :meth:`current` on every use.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._binding: Optional[ActiveUserBinding] = None
        self._listeners: List[BindingListener] = []

    def current(self) -> Optional[ActiveUserBinding]:
        with self._lock:
            return self._binding

    @property
    def is_bound(self) -> bool:
        return self.current() is not None

    def on_login(self, identity: Mapping[str, Any], credential: Optional[str] = None) -> ActiveUserBinding:
        binding = ActiveUserBinding.from_identity(identity, credential)
        with self._lock:
            self._binding = binding
            listeners = list(self._listeners)
        _LOGGER.info("User logged in: %s", binding.display_name)
        self._notify(listeners, binding)
        return binding

    def on_logout(self) -> None:
        with self._lock:
            previous = self._binding
            self._binding = None
            listeners = list(self._listeners)
        if previous is None:
            return
        _LOGGER.info("User logged out: %s", previous.display_name)
        self._notify(listeners, None)

    def invalidate(self, credential: str) -> bool:
        """Clear the binding if it still holds ``credential`` (rejected by the API)."""
        with self._lock:
            current = self._binding
            if current is None or current.credential != credential:
                return False
            self._binding = None
            listeners = list(self._listeners)
        _LOGGER.error("Authentication failed for %s; user needs to log in again", current.display_name)
        self._notify(listeners, None)
        return True

    def add_listener(self, listener: BindingListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: BindingListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    @staticmethod
    def _notify(listeners: List[BindingListener], binding: Optional[ActiveUserBinding]) -> None:
        for listener in listeners:
            try:
                listener(binding)
            except Exception as exc:
                _LOGGER.warning("Session listener raised error: %s", exc)
