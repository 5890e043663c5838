"""
Static preprocessing artifacts shipped with the model.

  label encoder  MDRTB_LABEL_ENCODER  (file path or http(s) URL)
  scaler         MDRTB_SCALER         (file path or http(s) URL)

An ArtifactStore fetches each artifact on first use and keeps it for its
own lifetime; the parsed artifacts are immutable and shared by every
patient run that uses the store.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

import requests
from dotenv import load_dotenv

from mdrtb.errors import UpstreamDataError
from mdrtb.ingest.dhis2 import DEFAULT_TIMEOUT, create_session
from mdrtb.transform.encoding import LabelEncoder, Scaler

load_dotenv(Path(__file__).parents[2] / ".env", override=True)

logger = logging.getLogger(__name__)

_REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_LABEL_ENCODER = "models/label_encoders.json"
DEFAULT_SCALER = "models/scaler.json"


def _is_url(location: str) -> bool:
    return location.startswith(("http://", "https://"))


def resolve_location(location: str) -> str:
    """URLs pass through; relative paths resolve from the repo root."""
    if _is_url(location):
        return location
    path = Path(location)
    return str(path if path.is_absolute() else _REPO_ROOT / path)


def fetch_json(location: str, session: Optional[requests.Session] = None,
               timeout: float = DEFAULT_TIMEOUT) -> Any:
    """Load a JSON document from a local path or over HTTP."""
    if _is_url(location):
        session = session or create_session()
        try:
            response = session.get(location, timeout=timeout)
            response.raise_for_status()
            return response.json()
        except requests.RequestException as exc:
            raise UpstreamDataError(f"Could not fetch {location}: {exc}") from exc
        except ValueError as exc:
            raise UpstreamDataError(f"{location} is not valid JSON") from exc

    try:
        with open(location, "r", encoding="utf-8") as f:
            return json.load(f)
    except OSError as exc:
        raise UpstreamDataError(f"Could not read {location}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise UpstreamDataError(f"{location} is not valid JSON: {exc}") from exc


class ArtifactStore:
    def __init__(self, label_encoder_location: str, scaler_location: str,
                 session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.label_encoder_location = resolve_location(label_encoder_location)
        self.scaler_location = resolve_location(scaler_location)
        self.session = session
        self.timeout = timeout
        self._owns_session = False
        self._label_encoder: Optional[LabelEncoder] = None
        self._scaler: Optional[Scaler] = None

    @classmethod
    def from_env(cls) -> "ArtifactStore":
        return cls(
            os.environ.get("MDRTB_LABEL_ENCODER", DEFAULT_LABEL_ENCODER),
            os.environ.get("MDRTB_SCALER", DEFAULT_SCALER),
            timeout=float(os.environ.get("DHIS2_TIMEOUT", DEFAULT_TIMEOUT)),
        )

    def _fetch(self, location: str) -> Any:
        # one session per store for remote artifacts, closed by clear()
        if _is_url(location) and self.session is None:
            self.session = create_session()
            self._owns_session = True
        return fetch_json(location, self.session, self.timeout)

    def label_encoder(self) -> LabelEncoder:
        if self._label_encoder is None:
            logger.info("Loading label encoder from %s", self.label_encoder_location)
            self._label_encoder = LabelEncoder.from_json(self._fetch(self.label_encoder_location))
        return self._label_encoder

    def scaler(self) -> Scaler:
        if self._scaler is None:
            logger.info("Loading scaler from %s", self.scaler_location)
            self._scaler = Scaler.from_json(self._fetch(self.scaler_location))
        return self._scaler

    def clear(self) -> None:
        """Drop the cached artifacts and close a session the store opened itself."""
        self._label_encoder = None
        self._scaler = None
        if self._owns_session and self.session is not None:
            self.session.close()
            self.session = None
            self._owns_session = False
