import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)


class SchemaFormat(str, Enum):
    DEFAULT = "default"
    LEGACY = "legacy"
    CSV = "csv"
    SIMPLE_JSON = "simple_json"
    SIEM = "siem"
    UNKNOWN = "unknown"


# Canonical field -> source path for each known layout. Dotted paths reach
# into nested objects.
FIELD_MAPPINGS: Dict[SchemaFormat, Dict[str, str]] = {
    SchemaFormat.DEFAULT: {
        "id": "id",
        "username": "username",
        "timestamp": "timestamp",
        "risk_score": "riskScore",
        "integration": "integration",
        "activity": "activity",
        "status": "status",
        "values": "values",
        "policies_breached": "policiesBreached",
    },
    SchemaFormat.LEGACY: {
        "username": "user",
        "timestamp": "time",
        "risk_score": "risk",
        "integration": "service",
        "activity": "type",
        "values": "data",
        "policies_breached": "breaches",
    },
    SchemaFormat.CSV: {
        "id": "activityId",
        "username": "user",
        "date": "date",
        "time": "time",
        "risk_score": "riskScore",
        "integration": "integration",
        "status": "status",
        "values": "values",
        "policies_breached": "policiesBreached",
    },
    SchemaFormat.SIMPLE_JSON: {
        "id": "id",
        "username": "user",
        "timestamp": "timestamp",
        "risk_score": "score",
        "integration": "source",
        "values": "details",
        "policies_breached": "violations",
    },
    SchemaFormat.SIEM: {
        "id": "event_id",
        "username": "user_principal",
        "timestamp": "event_time",
        "risk_score": "severity_score",
        "integration": "source_service",
        "activity": "event_category",
        "department": "organization_unit",
        "location": "geo_location",
        "values": "attributes",
        "policies_breached": "security_policies",
    },
    SchemaFormat.UNKNOWN: {},
}

# Identity keys win over any layout mapping, in this order.
IDENTITY_KEYS: List[str] = ["username", "user", "userId"]

# Tried after the layout-specific path, in order.
FALLBACK_KEYS: Dict[str, List[str]] = {
    "id": ["id", "activityId", "activity_id", "event_id", "eventId"],
    "username": ["username", "user", "userId", "user_id", "userName"],
    "user_id": ["userId", "user_id"],
    "timestamp": ["timestamp", "datetime", "eventTime", "event_time"],
    "date": ["date"],
    "time": ["time"],
    "risk_score": ["riskScore", "risk_score", "risk", "score"],
    "integration": ["integration", "service", "source", "application", "app", "channel"],
    "integration_source": ["integrationSource", "integration_source"],
    "activity": [
        "activity", "activityType", "activity_type", "action",
        "eventType", "event_type", "description", "type",
    ],
    "status": ["status"],
    "values": ["values", "details", "attributes"],
    "policies_breached": ["policiesBreached", "policies_breached", "breaches", "violations"],
    "department": ["department", "organization_unit"],
    "location": ["location", "geo_location", "geoLocation"],
    "device_id": ["deviceId", "device_id", "device"],
    "data_volume": ["dataVolume", "data_volume", "fileSize", "file_size", "bytes"],
}

_CUSTOM_HINTS = {
    "id": (("id",), ("key", "uid")),
    "username": (("user", "account", "actor"), ()),
    "timestamp": (("time", "date"), ()),
    "risk_score": (("risk", "score", "severity", "priority"), ()),
    "integration": (("app", "service", "integration", "source", "system"), ()),
    "values": (("value", "detail", "data"), ()),
    "policies_breached": (("polic", "breach", "violation"), ()),
}


def _has_all(keys, *required: str) -> bool:
    return all(name in keys for name in required)


def detect_schema_format(sample: Any) -> SchemaFormat:
    if not isinstance(sample, dict) or not sample:
        return SchemaFormat.UNKNOWN
    keys = set(sample.keys())
    if _has_all(keys, "activityId", "user", "date", "time"):
        return SchemaFormat.CSV
    if _has_all(keys, "event_id", "event_time") and ("severity_score" in keys or "security_policies" in keys):
        return SchemaFormat.SIEM
    if _has_all(keys, "user", "time", "risk", "service"):
        return SchemaFormat.LEGACY
    if _has_all(keys, "user", "score", "source") and "username" not in keys:
        return SchemaFormat.SIMPLE_JSON
    if _has_all(keys, "username", "riskScore", "integration"):
        return SchemaFormat.DEFAULT
    return SchemaFormat.UNKNOWN


def learn_custom_mapping(sample: Any) -> Dict[str, str]:
    """Guess a field mapping for an unrecognised layout from its key names."""
    if isinstance(sample, list):
        sample = sample[0] if sample else None
    if not isinstance(sample, dict):
        return {}
    mapping: Dict[str, str] = {}
    keys = [str(k) for k in sample.keys()]
    for field, (substrings, exact) in _CUSTOM_HINTS.items():
        for key in keys:
            lowered = key.lower()
            if lowered in exact or any(token in lowered for token in substrings):
                mapping[field] = key
                break
    # a timestamp guess that is really a bare date column belongs to date
    if mapping.get("timestamp", "").lower() == "date":
        mapping["date"] = mapping.pop("timestamp")
    return mapping


def get_nested(record: Dict[str, Any], path: Optional[str]) -> Any:
    if not path:
        return None
    if path in record:
        return record[path]
    current: Any = record
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


class FieldResolver:
    """Looks up canonical fields on one raw record for a detected layout."""

    def __init__(self, record: Dict[str, Any], schema_format: SchemaFormat, custom_mapping: Optional[Dict[str, str]] = None):
        self.record = record
        self.schema_format = schema_format
        self.mapping = FIELD_MAPPINGS.get(schema_format, {})
        self.custom_mapping = custom_mapping or {}

    def candidates(self, field: str) -> List[str]:
        paths: List[str] = list(IDENTITY_KEYS) if field == "username" else []
        mapped = self.mapping.get(field)
        if mapped and mapped not in paths:
            paths.append(mapped)
        paths.extend(k for k in FALLBACK_KEYS.get(field, []) if k not in paths)
        # learned guesses only fill gaps the known key names leave
        guessed = self.custom_mapping.get(field)
        if guessed and guessed not in paths:
            paths.append(guessed)
        return paths

    def values(self, field: str) -> Iterator[Any]:
        for path in self.candidates(field):
            value = get_nested(self.record, path)
            if _present(value):
                yield value

    def get(self, field: str) -> Any:
        return next(self.values(field), None)

    def first_valid(self, field: str, coerce: Callable[[Any], Any]) -> Any:
        """First candidate value that survives coercion, skipping rejected ones."""
        for value in self.values(field):
            coerced = coerce(value)
            if coerced is not None:
                return coerced
        return None


def resolver_for(record: Dict[str, Any]) -> FieldResolver:
    schema_format = detect_schema_format(record)
    custom = learn_custom_mapping(record) if schema_format == SchemaFormat.UNKNOWN else None
    if custom:
        logger.debug("custom mapping learned", extra={"mapping": custom})
    return FieldResolver(record, schema_format, custom)
