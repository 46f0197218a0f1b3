import enum
import json
import logging
import math
import re
import typing
from datetime import date, datetime, timezone
from functools import singledispatch

from entity_mapper.errors import MappingError


logger = logging.getLogger(__name__)

STORAGE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_NUMERIC_PREFIX = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?")
_INTEGER = re.compile(r"^\s*[+-]?\d+\s*$")
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


class LogicalType(enum.Enum):
    INT = "int"
    STRING = "string"
    FLOAT = "float"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    STRUCTURED = "structured"

    @classmethod
    def parse(cls, name: typing.Union[str, "LogicalType"]) -> "LogicalType":
        if isinstance(name, LogicalType):
            return name
        try:
            return _ALIASES[name.lower()]
        except (KeyError, AttributeError):
            raise MappingError(f"Unsupported logical type - {name!r}")


_ALIASES = {
    "int": LogicalType.INT,
    "integer": LogicalType.INT,
    "str": LogicalType.STRING,
    "string": LogicalType.STRING,
    "float": LogicalType.FLOAT,
    "double": LogicalType.FLOAT,
    "bool": LogicalType.BOOL,
    "boolean": LogicalType.BOOL,
    "datetime": LogicalType.TIMESTAMP,
    "timestamp": LogicalType.TIMESTAMP,
    "array": LogicalType.STRUCTURED,
    "json": LogicalType.STRUCTURED,
    "structured": LogicalType.STRUCTURED,
}


def _to_number(value: typing.Any) -> float:
    if isinstance(value, (int, float)):
        return value
    match = _NUMERIC_PREFIX.match(str(value))
    if not match:
        return 0
    return float(match.group(0))


def _to_int(value: typing.Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INTEGER.match(value):
        return int(value)
    number = _to_number(value)
    if isinstance(number, float) and not math.isfinite(number):
        return 0
    return int(number)


def _to_float(value: typing.Any) -> float:
    if isinstance(value, bool):
        return float(value)
    return float(_to_number(value))


def _to_string(value: typing.Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


def _to_bool(value: typing.Any) -> typing.Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return bool(value)
        return None
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUTHY:
            return True
        if normalized in _FALSY:
            return False
    return None


# fallbacks for text datetime.fromisoformat refuses, such as a trailing Z before Python 3.11
TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S%z",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
)


def _parse_timestamp(text: str) -> typing.Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        for timestamp_format in TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(text, timestamp_format)
                break
            except ValueError:
                continue
        else:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _to_timestamp(value: typing.Any) -> typing.Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            logger.debug("Cannot convert epoch offset %r to a timestamp", value)
            return None
    if isinstance(value, str):
        parsed = _parse_timestamp(value.strip())
        if parsed is None:
            logger.debug("Cannot parse %r as a timestamp", value)
        return parsed
    return None


def _to_structured(value: typing.Any) -> typing.Any:
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            logger.debug("Malformed JSON in structured column: %r", value)
            return None
    return None


_CASTERS: typing.Dict[LogicalType, typing.Callable[[typing.Any], typing.Any]] = {
    LogicalType.INT: _to_int,
    LogicalType.STRING: _to_string,
    LogicalType.FLOAT: _to_float,
    LogicalType.BOOL: _to_bool,
    LogicalType.TIMESTAMP: _to_timestamp,
    LogicalType.STRUCTURED: _to_structured,
}


def to_logical(value: typing.Any, logical_type: typing.Optional[LogicalType]) -> typing.Any:
    """Convert a value read from storage (or assigned by a caller) to its logical type.

    Never raises: values that cannot be represented degrade to ``None`` (or the
    zero value for numbers), so legacy rows stay loadable.
    """
    if value is None or logical_type is None:
        return value
    return _CASTERS[logical_type](value)


@singledispatch
def to_storage(value: typing.Any, logical_type: typing.Optional[LogicalType] = None) -> typing.Any:
    return value


@to_storage.register(datetime)
def _(value: datetime, logical_type: typing.Optional[LogicalType] = None) -> str:
    return value.strftime(STORAGE_DATETIME_FORMAT)


@to_storage.register(bool)
def _(value: bool, logical_type: typing.Optional[LogicalType] = None) -> int:
    return 1 if value else 0


@to_storage.register(dict)
@to_storage.register(list)
def _(value: typing.Union[dict, list], logical_type: typing.Optional[LogicalType] = None) -> str:
    return json.dumps(value, separators=(",", ":"), default=str)


def values_differ(original: typing.Any, new: typing.Any, logical_type: typing.Optional[LogicalType]) -> bool:
    if logical_type is LogicalType.TIMESTAMP:
        if original is None or new is None:
            return original is not new
        if isinstance(original, datetime) and isinstance(new, datetime):
            return original != new
        return True
    if logical_type is LogicalType.BOOL:
        return bool(original) is not bool(new)
    return original != new
