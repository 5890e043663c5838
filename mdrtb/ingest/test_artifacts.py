"""
Unit tests for artifact loading and the per-session artifact cache.

Run:
    pytest mdrtb/ingest/test_artifacts.py -v
"""

from __future__ import annotations

import json

import pytest
import requests

from mdrtb.errors import UpstreamDataError
import mdrtb.ingest.artifacts as artifacts_module
from mdrtb.ingest.artifacts import ArtifactStore, fetch_json, resolve_location

ENCODER_JSON = {"C1": {"classes": ["no", "yes"], "mapping": {"no": 0, "yes": 1}}}
SCALER_JSON = {"N1": {"mean": 10.0, "scale": 2.0}}


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return self.payload


class FakeSession:
    def __init__(self, payloads):
        self.payloads = payloads
        self.urls = []
        self.closed = False

    def get(self, url, timeout=None):
        self.urls.append(url)
        return self.payloads[url]

    def close(self):
        self.closed = True


@pytest.fixture
def store(tmp_path):
    (tmp_path / "label_encoders.json").write_text(json.dumps(ENCODER_JSON))
    (tmp_path / "scaler.json").write_text(json.dumps(SCALER_JSON))
    return ArtifactStore(str(tmp_path / "label_encoders.json"), str(tmp_path / "scaler.json"))


class TestResolveLocation:
    def test_url_untouched(self):
        assert resolve_location("https://a.example/x.json") == "https://a.example/x.json"

    def test_relative_path_anchored(self):
        resolved = resolve_location("models/scaler.json")
        assert resolved.endswith("models/scaler.json")
        assert resolved != "models/scaler.json"

    def test_absolute_path_untouched(self, tmp_path):
        assert resolve_location(str(tmp_path / "s.json")) == str(tmp_path / "s.json")


class TestFetchJson:
    def test_local_file(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text('{"k": 1}')
        assert fetch_json(str(path)) == {"k": 1}

    def test_missing_file(self, tmp_path):
        with pytest.raises(UpstreamDataError, match="Could not read"):
            fetch_json(str(tmp_path / "nope.json"))

    def test_invalid_json_file(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text("{not json")
        with pytest.raises(UpstreamDataError, match="not valid JSON"):
            fetch_json(str(path))

    def test_url(self):
        session = FakeSession({"https://a.example/s.json": FakeResponse(SCALER_JSON)})
        assert fetch_json("https://a.example/s.json", session=session) == SCALER_JSON

    def test_url_http_error(self):
        session = FakeSession({"https://a.example/s.json": FakeResponse(None, status=500)})
        with pytest.raises(UpstreamDataError, match="500"):
            fetch_json("https://a.example/s.json", session=session)


class TestArtifactStore:
    def test_parses_artifacts(self, store):
        assert store.label_encoder().get("C1").mapping["yes"] == 1
        assert store.scaler().columns["N1"].scale == 2.0

    def test_cached_until_cleared(self, store, tmp_path):
        encoder = store.label_encoder()
        (tmp_path / "label_encoders.json").write_text(json.dumps({}))
        assert store.label_encoder() is encoder

        store.clear()
        assert store.label_encoder().get("C1") is None

    def test_remote_fetched_once(self):
        session = FakeSession({
            "https://a.example/enc.json": FakeResponse(ENCODER_JSON),
            "https://a.example/scl.json": FakeResponse(SCALER_JSON),
        })
        store = ArtifactStore("https://a.example/enc.json", "https://a.example/scl.json", session=session)
        for _ in range(3):
            store.label_encoder()
            store.scaler()
        assert session.urls == ["https://a.example/enc.json", "https://a.example/scl.json"]

    def test_malformed_artifact(self, tmp_path):
        (tmp_path / "enc.json").write_text(json.dumps(["C1"]))
        store = ArtifactStore(str(tmp_path / "enc.json"), str(tmp_path / "missing.json"))
        with pytest.raises(UpstreamDataError):
            store.label_encoder()
        with pytest.raises(UpstreamDataError):
            store.scaler()

    def test_remote_store_shares_one_session_and_closes_it(self, monkeypatch):
        created = []

        def fake_create_session():
            session = FakeSession({
                "https://a.example/enc.json": FakeResponse(ENCODER_JSON),
                "https://a.example/scl.json": FakeResponse(SCALER_JSON),
            })
            created.append(session)
            return session

        monkeypatch.setattr(artifacts_module, "create_session", fake_create_session)
        store = ArtifactStore("https://a.example/enc.json", "https://a.example/scl.json")
        store.label_encoder()
        store.scaler()
        assert len(created) == 1
        assert created[0].urls == ["https://a.example/enc.json", "https://a.example/scl.json"]

        store.clear()
        assert created[0].closed
        assert store.session is None

        store.label_encoder()
        assert len(created) == 2

    def test_clear_leaves_caller_session_open(self):
        session = FakeSession({"https://a.example/enc.json": FakeResponse(ENCODER_JSON)})
        store = ArtifactStore("https://a.example/enc.json", "https://a.example/scl.json", session=session)
        store.label_encoder()
        store.clear()
        assert not session.closed
        assert store.session is session

    def test_local_files_open_no_session(self, store, monkeypatch):
        monkeypatch.setattr(artifacts_module, "create_session", lambda: pytest.fail("session created"))
        store.label_encoder()
        store.scaler()
        assert store.session is None
