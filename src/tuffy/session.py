"""Server-side sessions, keyed by a cookie."""
import copy
import secrets
import typing as t


class Session(dict):
    """A session's key/value data."""

    def __init__(self, sid: str, data: t.Mapping[str, t.Any] | None = None,
                 new: bool = False):
        super().__init__(data or {})
        self.sid = sid
        self.new = new

    def set(self, key: str, value: t.Any) -> None:
        self[key] = value

    def delete(self, key: str) -> None:
        self.pop(key, None)


class SessionStore(t.Protocol):
    def open(self, sid: str | None) -> Session: ...
    def save(self, session: Session) -> None: ...


class MemorySessionStore:
    """Keeps sessions in this process. Good for development and tests."""

    def __init__(self):
        self._sessions: dict[str, dict[str, t.Any]] = {}

    def open(self, sid: str | None) -> Session:
        if sid is not None and sid in self._sessions:
            return Session(sid, copy.deepcopy(self._sessions[sid]))
        return Session(secrets.token_urlsafe(24), new=True)

    def save(self, session: Session) -> None:
        self._sessions[session.sid] = copy.deepcopy(dict(session))

    def __len__(self):
        return len(self._sessions)
