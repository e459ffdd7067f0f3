"""
Per-value coercion from extracted source values into destination-typed values
"""

import json
import logging
import math
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import pandas as pd

from core.exceptions import RowConversionError
from models.base import WarehouseKind
from pipeline.transformers.type_mapping import split_type, type_family, unwrap

logger = logging.getLogger(__name__)

TRUE_STRINGS = frozenset({"true", "t", "yes", "y", "1"})
FALSE_STRINGS = frozenset({"false", "f", "no", "n", "0"})

# Families where an empty string means "no value"
EMPTY_AS_NULL = frozenset({"integer", "float", "decimal", "boolean", "date", "datetime", "enum"})
EMPTY_AS_NULL_TYPES = frozenset({"UUID", "IPv4", "IPv6"})


class ValueConverter:
    """
    Convert raw source values according to their canonical source type tag.

    Handles:
    - Wrapper unwrapping (Nullable, LowCardinality)
    - Numeric, boolean and temporal coercion
    - Serialized array / structured payloads
    - Unknown tags (string coercion with a warning)

    Native date and datetime objects are kept for ClickHouse destinations;
    every other destination receives ISO-8601 strings.
    """

    def __init__(self, destination: WarehouseKind):
        self.destination = WarehouseKind(destination)

    def convert(self, source_type: str, value: Any) -> Any:
        """
        Convert one value.

        Raises:
            RowConversionError: If the value cannot be coerced to the tag's family
        """
        if value is None:
            return None

        tag = unwrap(source_type or "")
        name, args = split_type(tag)
        family = type_family(tag)

        # Rich-text cells arrive as {"text": ...}; maps keep their shape
        if isinstance(value, dict) and "text" in value and family not in ("structured", "geo"):
            value = value["text"]
            if value is None:
                return None

        if value == "" and (family in EMPTY_AS_NULL or name in EMPTY_AS_NULL_TYPES):
            return None

        try:
            if family == "integer":
                return self._to_int(value)
            if family in ("float", "decimal"):
                return self._to_float(value)
            if family == "boolean":
                return self._to_bool(value)
            if family == "date":
                return self._to_date(value)
            if family == "datetime":
                return self._to_datetime(value)
            if family in ("string", "enum"):
                return self._to_str(value)
            if family == "array":
                return self._to_array(args, value)
            if family in ("structured", "geo"):
                return self._to_structured(value)
        except RowConversionError:
            raise
        except (ValueError, TypeError, OverflowError, ArithmeticError, RecursionError) as e:
            raise RowConversionError(
                f"Cannot convert value to {tag}",
                context={"source_type": tag, "value_type": type(value).__name__},
                original_exception=e
            )

        logger.warning(f"Unmapped source type {source_type!r}, coercing value to string")
        return self._to_str(value)

    # ------------------------------------------------------------------
    # Family coercions
    # ------------------------------------------------------------------

    @staticmethod
    def _to_int(value: Any) -> int:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return math.trunc(value)
        if isinstance(value, str):
            value = value.strip()
        # Decimal keeps large integral strings exact
        number = Decimal(value) if not isinstance(value, Decimal) else value
        if not number.is_finite():
            raise ValueError("non-finite value for integer column")
        return int(number)

    @staticmethod
    def _to_float(value: Any) -> float:
        if isinstance(value, str):
            value = value.strip()
        return float(value)

    @staticmethod
    def _to_bool(value: Any) -> bool:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in TRUE_STRINGS:
                return True
            if lowered in FALSE_STRINGS:
                return False
            raise ValueError("unrecognised boolean literal")
        return bool(value)

    @staticmethod
    def _parse_timestamp(value: Any) -> datetime:
        """Parse into a naive UTC datetime; numbers are epoch seconds."""
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, date):
            return datetime(value.year, value.month, value.day)
        else:
            if isinstance(value, bool):
                raise TypeError("boolean is not a timestamp")
            if isinstance(value, (int, float, Decimal)):
                stamp = pd.Timestamp(float(value), unit="s")
            else:
                stamp = pd.Timestamp(str(value).strip())
            if pd.isna(stamp):
                raise ValueError("unparseable timestamp")
            parsed = stamp.to_pydatetime()

        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed

    def _to_date(self, value: Any) -> Any:
        if isinstance(value, date) and not isinstance(value, datetime):
            parsed = value
        else:
            parsed = self._parse_timestamp(value).date()
        if self.destination == WarehouseKind.CLICKHOUSE:
            return parsed
        return parsed.isoformat()

    def _to_datetime(self, value: Any) -> Any:
        parsed = self._parse_timestamp(value)
        if self.destination == WarehouseKind.CLICKHOUSE:
            return parsed
        return parsed.isoformat()

    @staticmethod
    def _to_str(value: Any) -> str:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode("utf-8", errors="replace")
        return str(value)

    def _to_array(self, element_type: str, value: Any) -> list:
        if isinstance(value, (list, tuple)):
            items = list(value)
        elif isinstance(value, str):
            try:
                items = json.loads(value)
            except (ValueError, RecursionError):
                logger.debug("Array value is not valid JSON, using empty array")
                return []
            if not isinstance(items, list):
                return []
        else:
            return []

        if not element_type:
            return items
        return [self.convert(element_type, item) for item in items]

    @staticmethod
    def _to_structured(value: Any) -> Optional[Any]:
        if isinstance(value, dict):
            return value
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            try:
                return json.loads(value)
            except (ValueError, RecursionError):
                logger.debug("Structured value is not valid JSON, using null")
                return None
        return None


def convert(source_type: str, value: Any, destination: WarehouseKind) -> Any:
    """Convert one value for a destination (see ValueConverter.convert)."""
    return ValueConverter(destination).convert(source_type, value)
