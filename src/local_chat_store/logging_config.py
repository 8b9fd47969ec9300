import sys
from pathlib import Path
from typing import Any

from loguru import logger

_PACKAGE = "local_chat_store"


class _LogConsumer:
    """A loguru sink built from one ``LogConsumers`` entry in ``config.json``.

    With ``store_only`` set, the sink only receives records emitted by this
    package, so an embedding application's own logs stay out of it.
    """

    kind = ""
    format = "{level:<8} | {name}:{line} - {message}"

    def __init__(self, store_only: bool = False):
        self._store_only = bool(store_only)

    def sink(self) -> Any:
        raise NotImplementedError

    def options(self) -> dict[str, Any]:
        return {}

    def target(self) -> str:
        raise NotImplementedError

    def register(self, level: str) -> int:
        return logger.add(
            self.sink(),
            level=level,
            format=self.format,
            filter=_PACKAGE if self._store_only else None,
            **self.options(),
        )

    def describe(self, level: str) -> str:
        scope = ", store only" if self._store_only else ""
        return f"{self.kind} ({self.target()}, {level}{scope})"


class ConsoleLogConsumer(_LogConsumer):
    kind = "console"
    format = "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"

    def sink(self) -> Any:
        return sys.stderr

    def target(self) -> str:
        return "stderr"


class FileLogConsumer(_LogConsumer):
    kind = "file"
    format = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"

    def __init__(
        self,
        path: str = ".local_chat_store/store.log",
        rotation: str = "5 MB",
        retention: int = 3,
        store_only: bool = False,
    ):
        super().__init__(store_only)
        self._path = path
        self._rotation = rotation
        self._retention = retention

    def sink(self) -> Any:
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        return self._path

    def options(self) -> dict[str, Any]:
        return {"rotation": self._rotation, "retention": self._retention}

    def target(self) -> str:
        return self._path


_CONSUMER_TYPES: dict[str, type[_LogConsumer]] = {
    "console": ConsoleLogConsumer,
    "file": FileLogConsumer,
}


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
) -> list[str]:
    """Replace the loguru sinks and turn on the store's own log output.

    The store stays silent until an application calls this. ``consumers``
    defaults to a single console sink; each entry names a ``type`` and may
    override ``level`` and ``store_only``. Returns a description of each
    registered consumer.
    """
    logger.remove()
    logger.enable(_PACKAGE)

    descriptions: list[str] = []
    for config in consumers if consumers is not None else [{"type": "console"}]:
        sink_type = config.get("type", "")
        cls = _CONSUMER_TYPES.get(sink_type)
        if cls is None:
            logger.warning(f"Unknown log consumer type: {sink_type!r}")
            continue

        sink_level = config.get("level", level)
        consumer = cls(**{k: v for k, v in config.items() if k not in ("type", "level")})
        consumer.register(sink_level)
        descriptions.append(consumer.describe(sink_level))

    return descriptions
