"""
Feature schema: the ordered DHIS2 data-element ids the MDR-TB model was
trained on.

The tensor layout is ``[*categorical_columns, *numeric_columns]`` and must
match the model's input layer exactly.  The built-in lists below are
placeholder ids in DHIS2 UID form, not the trained model's columns; a
deployment supplies the real layout as a JSON file of the shape

    {"categorical_columns": [...], "numeric_columns": [...]}

pointed to by ``MDRTB_FEATURE_SCHEMA``.  Falling back to the placeholders
logs a warning.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv(Path(__file__).parents[2] / ".env")

logger = logging.getLogger(__name__)

# Placeholder ids standing in for the option-set coded data elements
CATEGORICAL_COLUMNS = [
    "lXQckcKN49t", "OlbFJqklhWf", "cZZz1nn7rTg", "jeXEgwsck8z", "CytbzeQCxb2",
    "FAi4I2Cuna3", "ynIs6bqNHIS", "Gg6ihPDzQ9R", "QllEqhuzhHr", "qUAOKbNfUwu",
    "xA0Kq5sez9G", "CeTRBg85MV5", "G66drX15C2x", "nrwfiqzlQkf", "vRY6lggQeku",
    "E0xPIsdK54O", "Yl0ywDR5ubI", "z9rHhmIsW6k", "teZUmH7exmB", "i3qjtj1KVAv",
    "mA0ZiptEPOe", "ShNRnQyQtYZ", "JWPzkWhpUme", "XifQolfhAyw", "bDKw2tkPkQE",
    "CqsdukgwF1u",
]

# Placeholder ids standing in for the numeric data elements
NUMERIC_COLUMNS = [
    "N0oP6f7Wh8V", "yTpFc76mjoi", "zK0AyIGLpt4", "z5id0bb72t9", "x0nflVOEhSK",
    "sv3Jir3NYSy", "yDaUQsozVV5", "DoiQZVzzpX7", "TpLY4AFnfUk", "s3sObdnf5jI",
    "du9vfWF59Ec", "rUdYQ6SJJPx", "CxoAUaPZMJ5", "d3Rts2hRVp7", "trUsJ7brHGq",
    "E54uHQlFUzB", "zQz6Rl5UpzG", "VOWhyKHK5mJ", "llevpv6dBg9", "Kw4H34cThsG",
    "uzqkfR6M1K7", "VrzGqjG5iL2",
]


@dataclass(frozen=True)
class FeatureSchema:
    categorical_columns: tuple[str, ...]
    numeric_columns: tuple[str, ...]

    def __post_init__(self) -> None:
        overlap = set(self.categorical_columns) & set(self.numeric_columns)
        if overlap:
            raise ValueError(f"Columns declared both categorical and numeric: {sorted(overlap)}")
        for name, cols in (("categorical", self.categorical_columns), ("numeric", self.numeric_columns)):
            if len(set(cols)) != len(cols):
                raise ValueError(f"Duplicate {name} columns in feature schema")

    @property
    def columns(self) -> tuple[str, ...]:
        """All feature ids in tensor order."""
        return self.categorical_columns + self.numeric_columns

    @property
    def width(self) -> int:
        return len(self.categorical_columns) + len(self.numeric_columns)

    def is_categorical(self, column: str) -> bool:
        return column in self.categorical_columns

    def is_numeric(self, column: str) -> bool:
        return column in self.numeric_columns


def load_feature_schema(path: Optional[Path] = None) -> FeatureSchema:
    """
    Return the feature schema from *path* (or ``MDRTB_FEATURE_SCHEMA``), or
    the built-in column lists when neither is set.
    """
    if path is None:
        env_path = os.environ.get("MDRTB_FEATURE_SCHEMA", "").strip()
        path = Path(env_path) if env_path else None
    if path is None:
        logger.warning(
            "MDRTB_FEATURE_SCHEMA is not set; using placeholder feature ids that "
            "will not match a trained model"
        )
        return DEFAULT_SCHEMA

    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    try:
        categorical = [str(c) for c in payload["categorical_columns"]]
        numeric = [str(c) for c in payload["numeric_columns"]]
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Feature schema file {path} is missing column lists: {exc}") from exc
    return FeatureSchema(tuple(categorical), tuple(numeric))


DEFAULT_SCHEMA = FeatureSchema(tuple(CATEGORICAL_COLUMNS), tuple(NUMERIC_COLUMNS))
