"""
Quick script to verify DHIS2 credentials and model artifacts before running
risk predictions.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

from mdrtb.errors import PredictionError
from mdrtb.ingest.artifacts import ArtifactStore
from mdrtb.ingest.dhis2 import DEFAULT_ORG_UNIT, DEFAULT_PROGRAM, Dhis2Client
from mdrtb.compute.inference import InferenceEngine
from mdrtb.transform.feature_schema import load_feature_schema

load_dotenv(Path(__file__).parent / ".env")

print("=" * 80)
print("MDR-TB Risk Credentials Verification")
print("=" * 80)
print()

# Check DHIS2 configuration
print("DHIS2 Configuration:")
print("-" * 80)
base_url = os.environ.get("DHIS2_BASE_URL", "not set")
username = os.environ.get("DHIS2_USERNAME", "not set")
password = os.environ.get("DHIS2_PASSWORD", "not set")
token = os.environ.get("DHIS2_TOKEN")

print(f"URL:      {base_url}")
print(f"User:     {username}")
print(f"Password: {'*' * len(password) if password != 'not set' else 'not set'}")
print(f"Token:    {'set' if token else 'not set'}")
print()

print("Testing DHIS2 connection...")
client = Dhis2Client.from_env()
try:
    me = client.whoami()
    print(f"✓ DHIS2 connection successful! Logged in as {me.get('username')} ({me.get('displayName')})")

    names = client.fetch_data_element_names()
    print(f"  - Data elements visible: {len(names):,}")

    schema = load_feature_schema()
    missing = [c for c in schema.columns if c not in names]
    if missing:
        print(f"  ✗ {len(missing)} model feature(s) not found as data elements: {missing[:5]}…")
    else:
        print(f"  ✓ All {schema.width} model features resolve to data elements")

    org_unit = os.environ.get("DHIS2_ORG_UNIT", DEFAULT_ORG_UNIT)
    program = os.environ.get("DHIS2_PROGRAM", DEFAULT_PROGRAM)
    tei_ids = client.list_tracked_entity_ids(org_unit, program)
    print(f"  - Tracked entities in {program} under {org_unit}: {len(tei_ids):,}")
except PredictionError as e:
    print(f"✗ DHIS2 connection failed: {e}")
    print()
    print("  Common issues:")
    print("  - DHIS2_BASE_URL should not include /api")
    print("  - Personal access tokens need the ApiToken scheme (set DHIS2_TOKEN)")
finally:
    client.close()

print()

# Check model artifacts
print("Model Artifacts:")
print("-" * 80)
store = ArtifactStore.from_env()
try:
    encoder = store.label_encoder()
    print(f"✓ Label encoder: {len(encoder.columns)} columns ({store.label_encoder_location})")
    scaler = store.scaler()
    print(f"✓ Scaler: {len(scaler.columns)} columns ({store.scaler_location})")
    scaler.check_covers(load_feature_schema().numeric_columns)
    print("  ✓ Scaler covers every numeric feature")
except PredictionError as e:
    print(f"✗ Artifact check failed: {e}")

engine = InferenceEngine.from_env()
try:
    model = engine.load()
    print(f"✓ Model loaded: {engine.model_path} input_shape={getattr(model, 'input_shape', '?')}")
except PredictionError as e:
    print(f"✗ {e}")
    print("    Run: python scripts/download_model_artifacts.py")

print()
print("=" * 80)
print("If every check passed, you're ready to run:")
print()
print("  python -m mdrtb.compute.risk_prediction --tei <tracked entity id>")
print()
print("=" * 80)
