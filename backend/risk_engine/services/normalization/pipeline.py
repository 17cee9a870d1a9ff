import csv
import io
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from risk_engine.schemas.activity import CanonicalActivity, NormalizationDiagnostics, NormalizationResult
from risk_engine.services.normalization.coercion import (
    INVALID_DATE,
    MALFORMED_JSON,
    MISSING_IDENTITY,
    categorize_integration,
    coerce_breaches,
    coerce_identity,
    coerce_mapping,
    coerce_optional_float,
    coerce_risk_score,
    coerce_text,
    combine_date_time,
    format_timestamp,
    normalize_status,
    parse_timestamp,
)
from risk_engine.services.normalization.schema_adapter import resolver_for

logger = logging.getLogger(__name__)

_WRAPPER_KEYS = ("data", "items", "records", "activities", "events", "results")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _resolve_time(resolver, issues: List[str], clock: Callable[[], datetime]):
    raw_timestamp = resolver.get("timestamp")
    if raw_timestamp is not None:
        parsed = parse_timestamp(raw_timestamp)
        if parsed is not None:
            return parsed, False
    raw_date = resolver.get("date")
    if raw_date is not None:
        combined = combine_date_time(raw_date, resolver.get("time"))
        if combined is not None:
            return combined, False
    if raw_timestamp is not None or raw_date is not None:
        issues.append(INVALID_DATE)
    return clock(), True


def normalize_record(raw: Dict[str, Any], index: int, issues: Optional[List[str]] = None, clock: Callable[[], datetime] = _now) -> CanonicalActivity:
    """Map one raw record onto the canonical activity shape."""
    issues = issues if issues is not None else []
    resolver = resolver_for(raw)

    username = resolver.first_valid("username", coerce_identity)
    if username is None:
        issues.append(MISSING_IDENTITY)
        username = "unknown"
    user_id = resolver.first_valid("user_id", coerce_identity) or username

    record_id = coerce_text(resolver.get("id")) or f"activity-{index}"

    moment, degraded = _resolve_time(resolver, issues, clock)
    if raw.get("timeDegraded") is True or raw.get("time_degraded") is True:
        degraded = True

    category, source = categorize_integration(resolver.get("integration"))
    explicit_source = resolver.get("integration_source")
    if explicit_source is None:
        explicit_source = raw.get("integrationSource")
    if isinstance(explicit_source, str):
        source = explicit_source.strip().lower()

    return CanonicalActivity(
        id=record_id,
        user_id=user_id,
        username=username,
        timestamp=format_timestamp(moment),
        hour=moment.hour,
        integration=category,
        integration_source=source,
        activity=coerce_text(resolver.get("activity")) or "",
        risk_score=coerce_risk_score(resolver.get("risk_score")),
        status=normalize_status(resolver.get("status")),
        policies_breached=coerce_breaches(resolver.get("policies_breached"), issues),
        values=coerce_mapping(resolver.get("values"), issues),
        department=coerce_text(resolver.get("department")),
        location=coerce_text(resolver.get("location")),
        device_id=coerce_text(resolver.get("device_id")),
        data_volume=coerce_optional_float(resolver.get("data_volume")),
        time_degraded=degraded,
    )


def _placeholder(index: int, clock: Callable[[], datetime]) -> CanonicalActivity:
    moment = clock()
    return CanonicalActivity(
        id=f"activity-{index}",
        user_id="unknown",
        username="unknown",
        timestamp=format_timestamp(moment),
        hour=moment.hour,
        time_degraded=True,
    )


def _unique_id(activity: CanonicalActivity, index: int, seen: Set[str]) -> CanonicalActivity:
    if activity.id not in seen:
        seen.add(activity.id)
        return activity
    candidate = f"{activity.id}-{index}"
    while candidate in seen:
        candidate = f"{candidate}-dup"
    seen.add(candidate)
    return activity.model_copy(update={"id": candidate})


def normalize_batch(
    raw_records: Optional[Iterable[Any]],
    clock: Callable[[], datetime] = _now,
    start: int = 0,
    seen: Optional[Set[str]] = None,
) -> NormalizationResult:
    """
    Normalize a batch of raw records. Chunked callers pass the running index
    and the shared set of emitted ids so ids stay unique across chunks.
    """
    diagnostics = NormalizationDiagnostics()
    activities: List[CanonicalActivity] = []
    seen = seen if seen is not None else set()
    for index, raw in enumerate(raw_records or [], start):
        diagnostics.total += 1
        issues: List[str] = []
        if not isinstance(raw, dict):
            diagnostics.non_mapping_records += 1
            activity = _placeholder(index, clock)
        else:
            fmt = resolver_for(raw).schema_format.value
            diagnostics.formats[fmt] = diagnostics.formats.get(fmt, 0) + 1
            try:
                activity = normalize_record(raw, index, issues, clock)
            except Exception:
                logger.exception("record normalization failed", extra={"index": index})
                activity = _placeholder(index, clock)
        diagnostics.malformed_json += issues.count(MALFORMED_JSON)
        diagnostics.invalid_dates += issues.count(INVALID_DATE)
        diagnostics.missing_identity += issues.count(MISSING_IDENTITY)
        activities.append(_unique_id(activity, index, seen))

    if diagnostics.malformed_json or diagnostics.invalid_dates or diagnostics.non_mapping_records:
        logger.warning("normalization recovered malformed input", extra=diagnostics.model_dump())
    logger.info(
        "normalized activity batch",
        extra={"received": diagnostics.total, "formats": diagnostics.formats},
    )
    return NormalizationResult(activities=activities, diagnostics=diagnostics)


def normalize_activities(raw_records: Optional[Iterable[Any]], clock: Callable[[], datetime] = _now) -> List[CanonicalActivity]:
    return normalize_batch(raw_records, clock).activities


def parse_raw_payload(text: str) -> List[Dict[str, Any]]:
    """
    Turn an uploaded payload into raw records. JSON arrays, JSON objects that
    wrap an array under a common key, single JSON objects and CSV with a
    header row are accepted. Anything else yields no records.
    """
    if not text or not text.strip():
        return []
    stripped = text.strip()
    if stripped[:1] in ("[", "{"):
        try:
            parsed = json.loads(stripped)
        except ValueError:
            logger.warning("payload looked like JSON but failed to parse")
            return []
        if isinstance(parsed, list):
            return [item for item in parsed if isinstance(item, dict)]
        if isinstance(parsed, dict):
            for key in _WRAPPER_KEYS:
                if isinstance(parsed.get(key), list):
                    return [item for item in parsed[key] if isinstance(item, dict)]
            return [parsed]
        return []
    reader = csv.DictReader(io.StringIO(stripped))
    if not reader.fieldnames:
        return []
    rows: List[Dict[str, Any]] = []
    for row in reader:
        cleaned = {(k or "").strip(): (v.strip() if isinstance(v, str) else v) for k, v in row.items() if k}
        if any(value not in (None, "") for value in cleaned.values()):
            rows.append(cleaned)
    return rows

