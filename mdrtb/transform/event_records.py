"""
Event extraction: tracked-entity JSON → one flat record per event.

Reads:  trackedEntityInstances/{id} payload
        (enrollments[].events[].dataValues[].{dataElement, value})
Produces: RawEventRecord per event (only schema columns kept), then a
          ProcessedEventRecord with every schema column present.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from mdrtb.errors import UpstreamDataError
from mdrtb.transform.feature_schema import FeatureSchema

logger = logging.getLogger(__name__)

RawValue = Union[str, float, None]
Value = Union[str, float, int]


@dataclass
class RawEventRecord:
    event_id: str
    values: dict[str, RawValue] = field(default_factory=dict)


@dataclass
class ProcessedEventRecord:
    event_id: str
    values: dict[str, Value]


def parse_number(raw: Any) -> float:
    """Float-parse a DHIS2 value; anything unparseable or non-finite is 0."""
    if raw is None or isinstance(raw, bool):
        return 0.0
    try:
        number = float(str(raw).strip())
    except ValueError:
        logger.debug("Unparseable numeric value %r, using 0", raw)
        return 0.0
    if not math.isfinite(number):
        logger.debug("Non-finite numeric value %r, using 0", raw)
        return 0.0
    return number


def _as_list(payload: dict, key: str, where: str) -> list:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise UpstreamDataError(f"Expected {where}.{key} to be a list, got {type(value).__name__}")
    return value


def extract_event_records(entity: Any, schema: FeatureSchema) -> dict[str, RawEventRecord]:
    """
    Walk enrollments → events → dataValues and return ``{event_id: RawEventRecord}``.

    Categorical columns keep the raw string (None when absent), numeric
    columns are parsed with :func:`parse_number`.  Data elements outside the
    schema are dropped.  An entity without enrollments or events yields an
    empty mapping.
    """
    if not isinstance(entity, dict):
        raise UpstreamDataError(f"Tracked entity payload must be an object, got {type(entity).__name__}")

    records: dict[str, RawEventRecord] = {}
    for e_idx, enrollment in enumerate(_as_list(entity, "enrollments", "trackedEntity")):
        if not isinstance(enrollment, dict):
            raise UpstreamDataError(f"Enrollment {e_idx} is not an object")
        for ev_idx, event in enumerate(_as_list(enrollment, "events", f"enrollments[{e_idx}]")):
            if not isinstance(event, dict):
                raise UpstreamDataError(f"Event {e_idx}:{ev_idx} is not an object")
            event_id = str(event.get("event") or f"{e_idx}:{ev_idx}")
            record = records.setdefault(event_id, RawEventRecord(event_id))

            for dv in _as_list(event, "dataValues", f"events[{ev_idx}]"):
                if not isinstance(dv, dict):
                    continue
                column = dv.get("dataElement")
                value = dv.get("value")
                if schema.is_categorical(column):
                    record.values[column] = None if value is None else str(value)
                elif schema.is_numeric(column):
                    record.values[column] = parse_number(value)

    return records


def normalize_event(raw: Optional[RawEventRecord], schema: FeatureSchema,
                    event_id: Optional[str] = None) -> ProcessedEventRecord:
    """Fill every schema column, defaulting absent or None values to 0."""
    values: dict[str, Value] = {col: 0 for col in schema.columns}
    if raw is not None:
        for col, value in raw.values.items():
            if col in values and value is not None:
                values[col] = value
        event_id = event_id or raw.event_id
    return ProcessedEventRecord(event_id or "", values)


def normalize_events(raw_records: dict[str, RawEventRecord],
                     schema: FeatureSchema) -> list[ProcessedEventRecord]:
    return [normalize_event(raw, schema, event_id) for event_id, raw in raw_records.items()]
