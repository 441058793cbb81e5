import logging
from collections.abc import Callable
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettingsSnapshot:
    use_password: bool = False
    access_password: str = ""
    config: dict | None = None


Observer = Callable[[SettingsSnapshot], None]


def is_config_valid(config: dict | None) -> bool:
    """A provider config is usable when it names a provider, a model and a key."""
    if not config:
        return False
    return bool((config.get("type") or config.get("name")) and config.get("model") and config.get("apiKey"))


class SessionSettings:
    """Shared settings passed by reference to the components that read them.

    Components that need to react to changes register an observer instead
    of listening for global events.
    """

    def __init__(self, snapshot: SettingsSnapshot | None = None) -> None:
        self._snapshot = snapshot or SettingsSnapshot()
        self._observers: list[Observer] = []

    @property
    def snapshot(self) -> SettingsSnapshot:
        return self._snapshot

    def subscribe(self, observer: Observer) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def update(self, **changes) -> SettingsSnapshot:
        self._snapshot = replace(self._snapshot, **changes)
        for observer in list(self._observers):
            observer(self._snapshot)
        logger.info("Settings updated: use_password=%s", self._snapshot.use_password)
        return self._snapshot

    def access_password(self) -> str | None:
        """The credential to forward to the generation boundary, if enabled."""
        if self._snapshot.use_password and self._snapshot.access_password:
            return self._snapshot.access_password
        return None
