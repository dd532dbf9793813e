import typing as t
from collections.abc import Mapping

from . import util


class Settings:
    """Application configuration, looked up by (possibly dotted) name."""
    DEFAULTS: dict[str, t.Any] = {
        'debug': False,
        'useSessions': True,
    }

    def __init__(self, values: t.Mapping[str, t.Any] | None = None):
        self._values = dict(self.DEFAULTS)
        if values:
            self.configure(values)

    @classmethod
    def from_file(cls, path: str, base: str | None = None) -> "Settings":
        """Runs a Python settings file and keeps the names it defines."""
        return cls(util.load_variables(util.interpret_path(path, base)))

    def get(self, name: str, default: t.Any = None) -> t.Any:
        """Get a setting. Dots traverse nested mappings: "database.dsn"."""
        if '.' not in name:
            return self._values.get(name, default)
        cursor: t.Any = self._values
        for part in name.split('.'):
            if isinstance(cursor, Mapping) and part in cursor:
                cursor = cursor[part]
            else:
                return default
        return cursor

    def configure(self, settings: t.Mapping[str, t.Any] | str,
                  value: t.Any = None) -> None:
        """Update several settings from a mapping, or one by name."""
        if isinstance(settings, Mapping):
            self._values.update(settings)
        elif isinstance(settings, str):
            self._values[settings] = value
        else:
            raise TypeError(
                f"invalid type for Settings.configure: {type(settings).__name__}")

    def __contains__(self, name: str) -> bool:
        return self.get(name, _MISSING) is not _MISSING


_MISSING = object()
