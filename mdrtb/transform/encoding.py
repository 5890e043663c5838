"""
Model-input preparation: label-encode categoricals, standardize numerics,
and flatten each event into a fixed-width float32 vector.

Artifacts
---------
  label encoder : {column: {"classes": [str], "mapping": {raw: int}}}
  scaler        : {column: {"mean": float, "scale": float}}

Both are produced at training time and treated as read-only here.
"""
from __future__ import annotations

import logging
import numbers
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

import numpy as np

from mdrtb.errors import SchemaMismatchError, UpstreamDataError, VectorAssemblyError
from mdrtb.transform.event_records import ProcessedEventRecord, parse_number
from mdrtb.transform.feature_schema import FeatureSchema

logger = logging.getLogger(__name__)

# Code used for unseen categories, columns without an encoder and defaulted values
FALLBACK_CODE = 0


# ---------------------------------------------------------------------------
# Artifacts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnEncoding:
    classes: tuple[str, ...]
    mapping: Mapping[str, int]


@dataclass(frozen=True)
class LabelEncoder:
    columns: Mapping[str, ColumnEncoding]

    @classmethod
    def from_json(cls, payload: Any) -> "LabelEncoder":
        if not isinstance(payload, dict):
            raise UpstreamDataError("Label encoder artifact must be a JSON object")
        columns: dict[str, ColumnEncoding] = {}
        for column, entry in payload.items():
            if not isinstance(entry, dict) or not isinstance(entry.get("mapping"), dict):
                raise UpstreamDataError(f"Label encoder entry for {column} has no mapping")
            try:
                mapping = {str(k): int(v) for k, v in entry["mapping"].items()}
            except (TypeError, ValueError) as exc:
                raise UpstreamDataError(f"Non-integer code in label encoder for {column}: {exc}") from exc
            classes = tuple(str(c) for c in entry.get("classes") or ())
            columns[str(column)] = ColumnEncoding(classes, MappingProxyType(mapping))
        return cls(MappingProxyType(columns))

    def get(self, column: str):
        return self.columns.get(column)


@dataclass(frozen=True)
class ScalerParams:
    mean: float
    scale: float


@dataclass(frozen=True)
class Scaler:
    columns: Mapping[str, ScalerParams]

    @classmethod
    def from_json(cls, payload: Any) -> "Scaler":
        if not isinstance(payload, dict):
            raise UpstreamDataError("Scaler artifact must be a JSON object")
        columns: dict[str, ScalerParams] = {}
        for column, entry in payload.items():
            try:
                columns[str(column)] = ScalerParams(float(entry["mean"]), float(entry["scale"]))
            except (KeyError, TypeError, ValueError) as exc:
                raise UpstreamDataError(f"Scaler entry for {column} needs numeric mean/scale: {exc}") from exc
        return cls(MappingProxyType(columns))

    def check_covers(self, numeric_columns: Iterable[str]) -> None:
        missing = [c for c in numeric_columns if c not in self.columns]
        if missing:
            raise SchemaMismatchError(
                f"Scaler has no mean/scale for {len(missing)} numeric column(s): {missing}"
            )


# ---------------------------------------------------------------------------
# Categorical encoder
# ---------------------------------------------------------------------------

def encode_value(column: str, value: Any, encoder: LabelEncoder) -> int:
    """
    Integer code for one categorical value.

    A defaulted value (numeric 0, never a string from DHIS2) is coded
    FALLBACK_CODE without a lookup, which is indistinguishable from a real
    class whose code is also 0.
    """
    entry = encoder.get(column)
    if entry is None:
        logger.debug("No label encoder for column %s, using code %d", column, FALLBACK_CODE)
        return FALLBACK_CODE
    if not isinstance(value, str):
        return FALLBACK_CODE
    code = entry.mapping.get(value)
    if code is None:
        logger.info("Unseen category %r for column %s, using code %d", value, column, FALLBACK_CODE)
        return FALLBACK_CODE
    return code


def encode_categoricals(record: ProcessedEventRecord, encoder: LabelEncoder,
                        schema: FeatureSchema) -> ProcessedEventRecord:
    values = dict(record.values)
    for column in schema.categorical_columns:
        values[column] = encode_value(column, values.get(column, 0), encoder)
    return ProcessedEventRecord(record.event_id, values)


# ---------------------------------------------------------------------------
# Numeric scaler
# ---------------------------------------------------------------------------

def scale_value(value: Any, params: ScalerParams) -> float:
    number = value if isinstance(value, float) else parse_number(value)
    scale = params.scale if params.scale != 0 else 1.0
    return max(0.0, (number - params.mean) / scale)


def scale_numerics(record: ProcessedEventRecord, scaler: Scaler,
                   schema: FeatureSchema) -> ProcessedEventRecord:
    scaler.check_covers(schema.numeric_columns)
    values = dict(record.values)
    for column in schema.numeric_columns:
        values[column] = scale_value(values.get(column, 0), scaler.columns[column])
    return ProcessedEventRecord(record.event_id, values)


# ---------------------------------------------------------------------------
# Tensor assembler
# ---------------------------------------------------------------------------

def assemble_vector(record: ProcessedEventRecord, schema: FeatureSchema) -> np.ndarray:
    vector = np.zeros(schema.width, dtype=np.float32)
    for i, column in enumerate(schema.columns):
        value = record.values.get(column)
        if isinstance(value, bool) or not isinstance(value, numbers.Real):
            raise VectorAssemblyError(
                f"Event {record.event_id}: column {column} holds non-numeric value {value!r}"
            )
        vector[i] = value
    return vector


def assemble_matrix(records: list[ProcessedEventRecord], schema: FeatureSchema) -> np.ndarray:
    """Stack assembled vectors into an ``(n_events, width)`` array."""
    if not records:
        return np.zeros((0, schema.width), dtype=np.float32)
    return np.vstack([assemble_vector(r, schema) for r in records])


def prepare_vectors(records: list[ProcessedEventRecord], encoder: LabelEncoder,
                    scaler: Scaler, schema: FeatureSchema) -> np.ndarray:
    """Encode, scale and assemble every processed event; fails before any row on a scaler gap."""
    scaler.check_covers(schema.numeric_columns)
    prepared = [
        scale_numerics(encode_categoricals(r, encoder, schema), scaler, schema)
        for r in records
    ]
    return assemble_matrix(prepared, schema)
