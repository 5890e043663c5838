"""
MDR-TB risk prediction — per-patient pipeline and batch entry point
=====================================================================

For every tracked entity:

  1. fetch enrollments/events from DHIS2
  2. extract one record per event, default missing columns to 0
  3. label-encode categoricals, standardize numerics, assemble vectors
  4. run the Keras model over each event vector
  5. average event probabilities → patient score (positive at >= 0.5)
  6. permutation importance → ranked contributing data elements

Usage
-----
    # Single patient
    python -m mdrtb.compute.risk_prediction --tei PQfMcpmXeFE

    # Every patient in the TB program under the configured org unit,
    # written to Parquet
    python -m mdrtb.compute.risk_prediction --output results/predictions.parquet

    # Reproducible importances
    python -m mdrtb.compute.risk_prediction --tei PQfMcpmXeFE --seed 7 --json
"""

from __future__ import annotations

import argparse
import enum
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, TextIO

import numpy as np
import polars as pl
from dotenv import load_dotenv

from mdrtb.compute.aggregate import PredictionResult, aggregate
from mdrtb.compute.importance import IMPORTANCE_SCHEMA, permutation_importance, rank_importances
from mdrtb.compute.inference import InferenceEngine, Predictor
from mdrtb.errors import PipelineBusyError, PredictionError
from mdrtb.ingest.artifacts import ArtifactStore
from mdrtb.ingest.dhis2 import DEFAULT_ORG_UNIT, DEFAULT_PROGRAM, Dhis2Client
from mdrtb.transform.encoding import prepare_vectors
from mdrtb.transform.event_records import extract_event_records, normalize_events
from mdrtb.transform.feature_schema import FeatureSchema, load_feature_schema

load_dotenv(Path(__file__).parents[2] / ".env", override=True)

logger = logging.getLogger(__name__)

# How many ranked features to keep in summaries / batch output
TOP_FEATURES = 10


class PipelineState(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


IN_FLIGHT = (PipelineState.LOADING, PipelineState.PROCESSING)

STATUS_DONE = "done"
STATUS_NO_DATA = "no_data"
STATUS_FAILED = "failed"


@dataclass
class PatientPrediction:
    tracked_entity_id: str
    status: str
    n_events: int = 0
    result: Optional[PredictionResult] = None
    importances: Optional[pl.DataFrame] = None
    error: Optional[str] = None

    def top_features(self, n: int = TOP_FEATURES) -> list[dict]:
        if self.importances is None:
            return []
        return self.importances.head(n).to_dicts()

    def to_dict(self, top: int = TOP_FEATURES) -> dict[str, Any]:
        out: dict[str, Any] = {
            "tracked_entity_id": self.tracked_entity_id,
            "status": self.status,
            "n_events": self.n_events,
            "error": self.error,
        }
        if self.result is not None:
            out.update({
                "average_probability": round(self.result.average, 4),
                "mdr_tb_predicted": self.result.classification,
                "risk_label": self.result.label,
                "event_probabilities": [round(p, 4) for p in self.result.event_probabilities],
            })
        out["top_features"] = self.top_features(top)
        return out


class RiskPredictionPipeline:
    """
    Owns the cached model, artifacts and display-name lookup for one session
    and runs at most one patient at a time.
    """

    def __init__(
        self,
        client: Dhis2Client,
        artifacts: ArtifactStore,
        engine: Predictor,
        schema: Optional[FeatureSchema] = None,
        rng: Optional[np.random.Generator] = None,
        n_repeats: int = 1,
    ):
        self.client = client
        self.artifacts = artifacts
        self.engine = engine
        self.schema = schema or load_feature_schema()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.n_repeats = n_repeats
        self.state = PipelineState.IDLE
        self._display_names: Optional[dict[str, str]] = None

    @classmethod
    def from_env(cls, seed: Optional[int] = None, n_repeats: int = 1) -> "RiskPredictionPipeline":
        return cls(
            Dhis2Client.from_env(),
            ArtifactStore.from_env(),
            InferenceEngine.from_env(),
            rng=np.random.default_rng(seed),
            n_repeats=n_repeats,
        )

    def _transition(self, new_state: PipelineState) -> None:
        logger.debug("Pipeline %s → %s", self.state.value, new_state.value)
        self.state = new_state

    def display_names(self) -> dict[str, str]:
        if self._display_names is None:
            self._display_names = self.client.fetch_data_element_names()
        return self._display_names

    def _load(self) -> None:
        """Warm every cached dependency; each is fetched at most once per session."""
        self.artifacts.label_encoder()
        self.artifacts.scaler()
        load = getattr(self.engine, "load", None)
        if load is not None:
            load()
        self.display_names()

    # ------------------------------------------------------------------
    # Core scoring (entity JSON already fetched)
    # ------------------------------------------------------------------

    def score_entity(self, tracked_entity_id: str, entity: Any) -> PatientPrediction:
        raw = extract_event_records(entity, self.schema)
        processed = normalize_events(raw, self.schema)
        if not processed:
            logger.info("Tracked entity %s has no events; skipping prediction", tracked_entity_id)
            return PatientPrediction(tracked_entity_id, STATUS_NO_DATA)

        matrix = prepare_vectors(
            processed, self.artifacts.label_encoder(), self.artifacts.scaler(), self.schema
        )
        probabilities = self.engine.predict_batch(matrix)
        result = aggregate(probabilities)

        importances = permutation_importance(
            self.engine, matrix, rng=self.rng, n_repeats=self.n_repeats
        )
        ranked = rank_importances(importances, self.schema.columns, self.display_names())
        return PatientPrediction(
            tracked_entity_id,
            STATUS_DONE,
            n_events=len(processed),
            result=result,
            importances=ranked,
        )

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(self, tracked_entity_id: str) -> PatientPrediction:
        """
        Fetch and score one patient.  Halting errors come back as a
        ``failed`` PatientPrediction carrying the message.
        """
        if self.state in IN_FLIGHT:
            raise PipelineBusyError(
                f"Prediction already {self.state.value}; refusing to start {tracked_entity_id}"
            )

        self._transition(PipelineState.LOADING)
        try:
            entity = self.client.fetch_tracked_entity(tracked_entity_id)
            self._load()
            self._transition(PipelineState.PROCESSING)
            prediction = self.score_entity(tracked_entity_id, entity)
        except PredictionError as exc:
            self._transition(PipelineState.FAILED)
            logger.error("Prediction failed for %s: %s", tracked_entity_id, exc)
            return PatientPrediction(tracked_entity_id, STATUS_FAILED, error=str(exc))
        except Exception:
            self._transition(PipelineState.FAILED)
            raise

        self._transition(PipelineState.DONE)
        return prediction

    def close(self) -> None:
        """Discard cached artifacts, model handle and HTTP session."""
        self.artifacts.clear()
        close_engine = getattr(self.engine, "close", None)
        if close_engine is not None:
            close_engine()
        self.client.close()
        self._display_names = None
        self._transition(PipelineState.IDLE)


# ---------------------------------------------------------------------------
# Batch helpers
# ---------------------------------------------------------------------------

def run_batch(pipeline: RiskPredictionPipeline, tracked_entity_ids: list[str],
              status: Optional[TextIO] = None) -> list[PatientPrediction]:
    status = status or sys.stdout
    predictions: list[PatientPrediction] = []
    for i, tei in enumerate(tracked_entity_ids):
        if i % 50 == 0:
            print(f"[predict]   …{i}/{len(tracked_entity_ids)}", end="\r", file=status)
        predictions.append(pipeline.run(tei))
    if tracked_entity_ids:
        print(file=status)
    return predictions


def predictions_frame(predictions: list[PatientPrediction], top: int = TOP_FEATURES) -> pl.DataFrame:
    """One row per patient, suitable for Parquet output."""
    rows = []
    for p in predictions:
        rows.append({
            "tracked_entity_id": p.tracked_entity_id,
            "status": p.status,
            "n_events": p.n_events,
            "average_probability": p.result.average if p.result else None,
            "mdr_tb_positive": p.result.positive if p.result else None,
            "risk_label": p.result.label if p.result else None,
            "top_features": json.dumps(p.top_features(top)),
            "error": p.error,
        })
    return pl.DataFrame(rows, schema={
        "tracked_entity_id": pl.Utf8,
        "status": pl.Utf8,
        "n_events": pl.Int64,
        "average_probability": pl.Float64,
        "mdr_tb_positive": pl.Boolean,
        "risk_label": pl.Utf8,
        "top_features": pl.Utf8,
        "error": pl.Utf8,
    })


def _print_summary(prediction: PatientPrediction, top: int) -> None:
    if prediction.status == STATUS_FAILED:
        print(f"  {prediction.tracked_entity_id}: ERROR — {prediction.error}")
        return
    if prediction.status == STATUS_NO_DATA:
        print(f"  {prediction.tracked_entity_id}: no event data available")
        return
    r = prediction.result
    print(f"  {prediction.tracked_entity_id}: p(MDR-TB)={r.average:.3f} "
          f"predicted={r.classification} label={r.label} events={prediction.n_events}")
    importances = prediction.importances if prediction.importances is not None else pl.DataFrame(schema=IMPORTANCE_SCHEMA)
    for row in importances.head(top).iter_rows(named=True):
        print(f"      {row['importance']:+.4f}  {row['feature_name']}")


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Predict MDR-TB risk for DHIS2 tracked entities."
    )
    parser.add_argument(
        "--tei", nargs="*", metavar="ID",
        help="Tracked entity id(s) to score. Omit to score the whole program.",
    )
    parser.add_argument("--org-unit", default=os.environ.get("DHIS2_ORG_UNIT", DEFAULT_ORG_UNIT))
    parser.add_argument("--program", default=os.environ.get("DHIS2_PROGRAM", DEFAULT_PROGRAM))
    parser.add_argument("--seed", type=int, default=None, help="Seed for the importance shuffles.")
    parser.add_argument("--repeats", type=int, default=1, help="Shuffles per feature.")
    parser.add_argument("--top", type=int, default=TOP_FEATURES, help="Features to report per patient.")
    parser.add_argument("--output", type=Path, help="Write results to this Parquet file.")
    parser.add_argument("--json", action="store_true", help="Print full results as JSON.")
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    # stdout carries only the JSON document under --json
    status = sys.stderr if args.json else sys.stdout

    print(f"[predict] Starting MDR-TB risk prediction — {datetime.now(timezone.utc).isoformat()}", file=status)
    pipeline = RiskPredictionPipeline.from_env(seed=args.seed, n_repeats=args.repeats)
    try:
        tei_ids = args.tei
        if not tei_ids:
            print(f"[predict] Listing tracked entities under {args.org_unit} / {args.program}…", file=status)
            try:
                tei_ids = pipeline.client.list_tracked_entity_ids(args.org_unit, args.program)
            except PredictionError as exc:
                print(f"[predict] ERROR: {exc}", file=sys.stderr)
                return 1
        print(f"[predict]   {len(tei_ids):,} tracked entities", file=status)

        predictions = run_batch(pipeline, tei_ids, status)
    finally:
        pipeline.close()

    if args.json:
        print(json.dumps([p.to_dict(args.top) for p in predictions], indent=2))
    else:
        for p in predictions:
            _print_summary(p, args.top)

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        predictions_frame(predictions, args.top).write_parquet(args.output, compression="zstd")
        print(f"[predict] → {args.output}  ({len(predictions):,} rows)", file=status)

    failed = sum(1 for p in predictions if p.status == STATUS_FAILED)
    print(f"[predict] Done — {len(predictions) - failed}/{len(predictions)} scored "
          f"— {datetime.now(timezone.utc).isoformat()}", file=status)
    return 1 if predictions and failed == len(predictions) else 0


if __name__ == "__main__":
    sys.exit(main())
