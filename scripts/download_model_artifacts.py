#!/usr/bin/env python3
"""
Download the MDR-TB model bundle (Keras model, label encoders, scaler)
into models/.  Only files that are missing locally are fetched unless
--force is given.

Usage:
  MDRTB_ARTIFACT_BASE_URL=https://artifacts.example.org/mdrtb/v1 \
      python scripts/download_model_artifacts.py [--force]
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import requests
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))

from mdrtb.ingest.dhis2 import create_session  # noqa: E402

load_dotenv(BASE_DIR / ".env")

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

MODELS_DIR = BASE_DIR / "models"

# Bundle member → local file name
ARTIFACT_FILES = {
    "model": "mdrtb_model.keras",
    "label_encoders": "label_encoders.json",
    "scaler": "scaler.json",
}


def download_file(session: requests.Session, url: str, output_path: Path,
                  name: str, timeout: float = 300) -> Dict:
    """Download one artifact, removing any partial file on failure."""
    result = {
        'url': url,
        'output_path': str(output_path),
        'name': name,
        'timestamp': datetime.now().isoformat(),
        'success': False,
        'file_size_kb': 0,
        'error': None
    }

    try:
        logger.info(f"Downloading {name} from {url}")
        output_path.parent.mkdir(parents=True, exist_ok=True)

        response = session.get(url, stream=True, timeout=timeout)
        response.raise_for_status()

        with open(output_path, 'wb') as f:
            for chunk in response.iter_content(chunk_size=8192):
                if chunk:
                    f.write(chunk)

        if output_path.suffix == '.json':
            # fail now rather than at the first prediction
            with open(output_path, 'r', encoding='utf-8') as f:
                json.load(f)

        result['file_size_kb'] = round(output_path.stat().st_size / 1024, 1)
        result['success'] = True
        logger.info(f"✓ Downloaded {name}: {result['file_size_kb']} KB")

    except (requests.RequestException, OSError, ValueError) as e:
        result['error'] = str(e)
        logger.error(f"✗ Failed to download {name}: {e}")
        if output_path.exists():
            output_path.unlink()

    return result


def download_artifacts(base_url: str, out_dir: Path = MODELS_DIR,
                       force: bool = False,
                       session: Optional[requests.Session] = None) -> Dict:
    session = session or create_session()
    manifest = {
        'download_date': datetime.now().isoformat(),
        'base_url': base_url,
        'artifacts': []
    }

    for name, filename in ARTIFACT_FILES.items():
        output_file = out_dir / filename
        if output_file.exists() and not force:
            logger.info(f"  Skipping {name} - already exists")
            continue
        url = f"{base_url.rstrip('/')}/{filename}"
        manifest['artifacts'].append(download_file(session, url, output_file, name))

    manifest_path = out_dir / "download_manifest.json"
    out_dir.mkdir(parents=True, exist_ok=True)
    with open(manifest_path, 'w') as f:
        json.dump(manifest, f, indent=2)

    successful = sum(1 for a in manifest['artifacts'] if a['success'])
    logger.info(f"Successful downloads: {successful}/{len(manifest['artifacts'])}")
    return manifest


def main() -> int:
    parser = argparse.ArgumentParser(description="Download the MDR-TB model bundle.")
    parser.add_argument("--base-url", default=os.environ.get("MDRTB_ARTIFACT_BASE_URL"),
                        help="Directory URL holding the bundle files.")
    parser.add_argument("--out-dir", type=Path, default=MODELS_DIR)
    parser.add_argument("--force", action="store_true", help="Re-download existing files.")
    args = parser.parse_args()

    if not args.base_url:
        logger.error("No artifact URL: pass --base-url or set MDRTB_ARTIFACT_BASE_URL")
        return 2

    manifest = download_artifacts(args.base_url, args.out_dir, force=args.force)
    return 0 if all(a['success'] for a in manifest['artifacts']) else 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info("\nDownload interrupted by user")
        sys.exit(130)
