import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

_DMY_RE = re.compile(r"^(\d{1,2})[/.-](\d{1,2})[/.-](\d{4})$")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([aApP][mM])?$")
_LEADING_NUMBER_RE = re.compile(r"^[+-]?\d+(?:\.\d+)?")
_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
)

MALFORMED_JSON = "malformed_json"
INVALID_DATE = "invalid_date"
MISSING_IDENTITY = "missing_identity"


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return False


def _parse_json(value: Optional[str], fallback: Any) -> Any:
    if not value:
        return fallback
    try:
        return json.loads(value)
    except Exception:
        return fallback


def _names_to_mapping(names: List[Any]) -> Dict[str, Any]:
    return {str(name).strip(): True for name in names if not is_blank(name) and str(name).strip()}


def coerce_breaches(value: Any, issues: List[str]) -> Dict[str, Any]:
    """
    policiesBreached arrives as a mapping, a JSON string, a list of names
    or a comma separated string of names.
    """
    if is_blank(value):
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, (list, tuple, set)):
        return _names_to_mapping(list(value))
    if isinstance(value, str):
        text = value.strip()
        if text[:1] in ("{", "["):
            parsed = _parse_json(text, None)
            if isinstance(parsed, dict):
                return parsed
            if isinstance(parsed, list):
                return _names_to_mapping(parsed)
            issues.append(MALFORMED_JSON)
            return {}
        return _names_to_mapping(text.split(","))
    return {}


def coerce_mapping(value: Any, issues: List[str]) -> Dict[str, Any]:
    if is_blank(value):
        return {}
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = _parse_json(value.strip(), None)
        if isinstance(parsed, dict):
            return parsed
        issues.append(MALFORMED_JSON)
        return {}
    return {}


def coerce_risk_score(value: Any) -> float:
    if is_blank(value) or isinstance(value, bool):
        return 0.0
    number: Optional[float] = None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip().replace(",", "")
        try:
            number = float(text)
        except ValueError:
            match = _LEADING_NUMBER_RE.match(text)
            number = float(match.group(0)) if match else None
    if number is None or math.isnan(number) or math.isinf(number):
        return 0.0
    return max(0.0, number)


def coerce_optional_float(value: Any) -> Optional[float]:
    if is_blank(value) or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip().replace(",", ""))
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def coerce_identity(value: Any) -> Optional[str]:
    if is_blank(value) or isinstance(value, (dict, list)):
        return None
    text = str(value).strip().lower()
    return text or None


def coerce_text(value: Any) -> Optional[str]:
    if is_blank(value):
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value).strip()


def normalize_status(value: Any) -> str:
    text = str(value or "").strip().lower()
    if re.search(r"under.*review", text):
        return "underReview"
    if "trust" in text:
        return "trusted"
    if "non" in text and "concern" in text:
        return "nonConcern"
    if "concern" in text:
        return "concern"
    return "underReview"


def categorize_integration(value: Any) -> Tuple[str, str]:
    """Returns (category, source name with vendor prefix removed)."""
    source = str(value or "").strip().lower()
    if source.startswith("si-"):
        source = source[3:]
    source = source.strip()
    if "mail" in source:
        return "email", source
    if any(token in source for token in ("cloud", "drive", "storage", "sharepoint", "dropbox")):
        return "cloud", source
    if any(token in source for token in ("usb", "device", "removable")):
        return "usb", source
    if "app" in source:
        return "application", source
    if "file" in source or "document" in source:
        return "file", source
    return "other", source


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_epoch(number: float) -> Optional[datetime]:
    # millisecond epochs are common in exported JSON
    if abs(number) > 1e11:
        number = number / 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if math.isnan(value) or math.isinf(value):
            return None
        return _from_epoch(float(value))
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if re.fullmatch(r"\d{9,13}", text):
        return _from_epoch(float(text))
    try:
        return _as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        pass
    for fmt in _DATETIME_FORMATS:
        try:
            return _as_utc(datetime.strptime(text, fmt))
        except ValueError:
            continue
    return None


def _parse_date_parts(value: Any) -> Optional[Tuple[int, int, int]]:
    text = str(value or "").strip()
    match = _DMY_RE.match(text)
    if match:
        day, month, year = (int(part) for part in match.groups())
        return year, month, day
    match = _ISO_DATE_RE.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return year, month, day
    return None


def _parse_time_parts(value: Any) -> Optional[Tuple[int, int, int]]:
    text = str(value).strip() if not is_blank(value) else "00:00"
    match = _TIME_RE.match(text)
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    second = int(match.group(3) or 0)
    meridiem = (match.group(4) or "").lower()
    if meridiem == "pm" and hour < 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    return hour, minute, second


def combine_date_time(date_value: Any, time_value: Any) -> Optional[datetime]:
    """Date as DD/MM/YYYY (or ISO YYYY-MM-DD) plus an optional HH:MM[:SS] time."""
    if is_blank(date_value):
        return None
    date_parts = _parse_date_parts(date_value)
    time_parts = _parse_time_parts(time_value)
    if date_parts is None or time_parts is None:
        return None
    try:
        return datetime(*date_parts, *time_parts, tzinfo=timezone.utc)
    except ValueError:
        return None


def format_timestamp(dt: datetime) -> str:
    return _as_utc(dt).isoformat()
