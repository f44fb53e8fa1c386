"""Key/value stores backing client authorization requests between HTTP requests."""
from __future__ import annotations

from typing import Any, Protocol

from flask import session


class SessionStore(Protocol):
    def get(self, key: str) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class FlaskSessionStore:
    """Stores values in the current user's Flask session."""

    def get(self, key):
        return session.get(key)

    def set(self, key, value):
        session[key] = value

    def remove(self, key):
        session.pop(key, None)


class MemorySessionStore:
    """A plain dict store, for callers outside a request context."""

    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value

    def remove(self, key):
        self.data.pop(key, None)
