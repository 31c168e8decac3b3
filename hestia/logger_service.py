# Logger Service Module
"""Logging for every orchestrator component.

Components log through :class:`LoggerService` with a ``source_module`` (normally their
class name) and an optional ``context`` mapping. Records land under the ``hestia``
logger hierarchy, on a human readable console handler and, when enabled, in a
rotating JSON file for log shipping. Context values that look like credentials are
masked before any handler sees them.
"""

import logging
import logging.handlers
import re
import sys
import types
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol, TypeAlias

from pythonjsonlogger import jsonlogger

ExcInfoType: TypeAlias = (
    bool | tuple[type[BaseException], BaseException, types.TracebackType] | BaseException | None
)

ROOT_LOGGER_NAME = "hestia"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s - [%(context)s]"
JSON_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s %(context)s"
MASK = "********"

# Substrings of context keys whose values are never logged
_SENSITIVE_KEYS = (
    "api_key",
    "secret",
    "password",
    "token",
    "credentials",
    "private_key",
    "auth",
    "access_key",
    "salt",
)
# Long base64-looking strings are treated as secrets whatever their key
_SENSITIVE_VALUE_PATTERN = re.compile(r"^[A-Za-z0-9/+=]{40,}$")


class ConfigManagerProtocol(Protocol):
    def get(self, key: str, default: Any = None) -> Any:  # noqa: ANN401
        ...


class ContextFormatter(logging.Formatter):
    """Console formatter rendering ``record.context`` as ``key=value`` pairs.

    Records without context lose the ``- [...]`` suffix entirely.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = getattr(record, "context", None)
        if isinstance(context, Mapping):
            rendered = ", ".join(f"{k}={v}" for k, v in context.items())
        else:
            rendered = str(context) if context else ""

        # Format a copy so the JSON handler still sees the mapping
        shown = logging.makeLogRecord(record.__dict__)
        shown.context = rendered
        text = super().format(shown)
        if not rendered:
            text = text.replace(" - []", "").replace("[]", "")
        return text


class LoggerService:
    """Configures the ``hestia`` logger hierarchy and logs with filtered context."""

    def __init__(self, config_manager: ConfigManagerProtocol) -> None:
        """Install the handlers described by the ``logging`` settings section.

        Args:
        ----
            config_manager: Source of the ``logging.*`` settings.
        """
        self._config_manager = config_manager
        self._level = str(config_manager.get("logging.level", "INFO")).upper()
        self._datefmt = config_manager.get("logging.date_format", "%Y-%m-%d %H:%M:%S")
        self._root_logger = logging.getLogger(ROOT_LOGGER_NAME)
        self._handlers: list[logging.Handler] = []

        self._setup_logging()
        self.info("LoggerService initialized.", source_module=self.__class__.__name__)

    async def initialize(self) -> None:
        return None

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        """Flush, detach and close the handlers this service installed."""
        for handler in self._handlers:
            handler.flush()
            self._root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

    def _setup_logging(self) -> None:
        self._root_logger.setLevel(self._level)
        for stale in list(self._root_logger.handlers):
            self._root_logger.removeHandler(stale)
            stale.close()

        get = self._config_manager.get
        if get("logging.console.enabled", True):
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(ContextFormatter(
                get("logging.format", DEFAULT_LOG_FORMAT), datefmt=self._datefmt))
            self._add_handler(console)

        if get("logging.file.enabled", False):
            directory = Path(str(get("logging.file.directory", "logs")))
            directory.mkdir(parents=True, exist_ok=True)
            rotating = logging.handlers.RotatingFileHandler(
                directory / str(get("logging.file.filename", "hestia.log")),
                maxBytes=int(get("logging.file.max_bytes", 10 * 1024 * 1024)),
                backupCount=int(get("logging.file.backup_count", 5)),
                encoding="utf-8")
            rotating.setFormatter(jsonlogger.JsonFormatter(
                JSON_LOG_FORMAT, datefmt=self._datefmt, rename_fields={"levelname": "level"}))
            self._add_handler(rotating)

    def _add_handler(self, handler: logging.Handler) -> None:
        handler.setLevel(self._level)
        self._root_logger.addHandler(handler)
        self._handlers.append(handler)

    def _filter_sensitive_data(
        self,
        context: Mapping[str, object] | None,
    ) -> dict[str, object] | None:
        """Copy ``context`` with credential-like values replaced by :data:`MASK`.

        Nested mappings, and mappings inside lists, are filtered the same way.
        Returns None for an empty or missing context.
        """
        if not context:
            return None

        filtered: dict[str, object] = {}
        for key, value in context.items():
            sensitive_key = any(marker in str(key).lower() for marker in _SENSITIVE_KEYS)
            if isinstance(value, Mapping):
                filtered[key] = MASK if sensitive_key else self._filter_sensitive_data(value)
            elif isinstance(value, list):
                filtered[key] = [
                    self._filter_sensitive_data(v) if isinstance(v, Mapping) else v for v in value
                ]
            elif sensitive_key or (
                isinstance(value, str) and _SENSITIVE_VALUE_PATTERN.match(value)
            ):
                filtered[key] = MASK
            else:
                filtered[key] = value
        return filtered

    def log(
        self,
        level: int,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None,
        exc_info: ExcInfoType = None) -> None:
        """Emit one record on ``hestia.<source_module>``.

        Args:
        ----
            level: Standard ``logging`` level.
            message: %-style format string.
            *args: Values for ``message``.
            source_module: Component name; selects the child logger.
            context: Extra structured fields, filtered for secrets.
            exc_info: Exception information to attach.
        """
        name = f"{ROOT_LOGGER_NAME}.{source_module}" if source_module else ROOT_LOGGER_NAME
        # stacklevel=3 attributes the record to the caller of the level helper
        logging.getLogger(name).log(
            level,
            message,
            *args,
            exc_info=exc_info,
            extra={"context": self._filter_sensitive_data(context) or {}},
            stacklevel=3)

    def debug(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None) -> None:
        self.log(logging.DEBUG, message, *args, source_module=source_module, context=context)

    def info(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None) -> None:
        self.log(logging.INFO, message, *args, source_module=source_module, context=context)

    def warning(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None) -> None:
        self.log(logging.WARNING, message, *args, source_module=source_module, context=context)

    def error(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None,
        exc_info: ExcInfoType = None) -> None:
        self.log(
            logging.ERROR, message, *args,
            source_module=source_module, context=context, exc_info=exc_info)

    def exception(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None) -> None:
        """ERROR record carrying the exception being handled; call from ``except`` blocks."""
        self.log(
            logging.ERROR, message, *args,
            source_module=source_module, context=context, exc_info=True)

    def critical(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None,
        exc_info: ExcInfoType = None) -> None:
        self.log(
            logging.CRITICAL, message, *args,
            source_module=source_module, context=context, exc_info=exc_info)
