"""Name -> implementation registry for configurable collaborators.

Extraction providers and export adapters are both picked by a settings value
(``extraction_provider``, ``export_provider``); each keeps one Registry mapping
those values to classes. New implementations can be registered at runtime.
"""

import logging
from collections.abc import Iterator
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Registry(Generic[T]):
    """Mapping of configuration names to implementation classes.

    Args:
        kind: Human-readable collaborator kind used in messages
            (e.g. "extraction provider")
        entries: Initial name -> class mapping
    """

    def __init__(self, kind: str, entries: dict[str, type[T]] | None = None) -> None:
        self.kind = kind
        self._entries: dict[str, type[T]] = dict(entries or {})

    def register(self, name: str, cls: type[T]) -> None:
        self._entries[name] = cls
        logger.info(f"Registered {self.kind}: {name}")

    def unregister(self, name: str) -> None:
        self._entries.pop(name, None)

    def get(self, name: str) -> type[T]:
        """Return the class registered under name.

        Raises:
            ValueError: If nothing is registered under name
        """
        try:
            return self._entries[name]
        except KeyError:
            available = ", ".join(self._entries)
            raise ValueError(
                f"Unknown {self.kind}: '{name}'. Available providers: {available}"
            ) from None

    def names(self) -> list[str]:
        return list(self._entries)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)
