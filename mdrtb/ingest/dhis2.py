"""
DHIS2 tracker API client.

Read-only access to the resources the risk pipeline needs:

  trackedEntityInstances/{id}   enrollments → events → dataValues
  trackedEntityInstances        id listing under an org unit / program
  dataElements                  id → display name lookup

Configuration (env / .env):
  DHIS2_BASE_URL, DHIS2_USERNAME, DHIS2_PASSWORD, DHIS2_TOKEN,
  DHIS2_TIMEOUT, DHIS2_ORG_UNIT, DHIS2_PROGRAM
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import requests
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from mdrtb.errors import UpstreamDataError

load_dotenv(Path(__file__).parents[2] / ".env", override=True)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8080"
DEFAULT_TIMEOUT = 30.0

# TB program and root org unit of the national tracker instance
DEFAULT_ORG_UNIT = "akV6429SUqu"
DEFAULT_PROGRAM = "wfd9K4dQVDR"

TRACKED_ENTITY_FIELDS = [
    "trackedEntityInstance",
    "enrollments",
    "created",
    "attributes",
    "orgUnitName",
    "events",
    "coordinates",
]


def create_session(username: Optional[str] = None, password: Optional[str] = None,
                   token: Optional[str] = None) -> requests.Session:
    """Create a requests session with retry logic and DHIS2 credentials."""
    session = requests.Session()
    retry_strategy = Retry(
        total=3,
        backoff_factor=2,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "HEAD"],
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({
        "Accept": "application/json",
        "User-Agent": "mdrtb-risk/1.0",
    })
    if token:
        session.headers["Authorization"] = f"ApiToken {token}"
    elif username:
        session.auth = (username, password or "")
    return session


class Dhis2Client:
    def __init__(self, base_url: str, session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else create_session()
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "Dhis2Client":
        session = create_session(
            username=os.environ.get("DHIS2_USERNAME"),
            password=os.environ.get("DHIS2_PASSWORD"),
            token=os.environ.get("DHIS2_TOKEN"),
        )
        return cls(
            os.environ.get("DHIS2_BASE_URL", DEFAULT_BASE_URL),
            session=session,
            timeout=float(os.environ.get("DHIS2_TIMEOUT", DEFAULT_TIMEOUT)),
        )

    def close(self) -> None:
        self.session.close()

    def _get(self, resource: str, params: Optional[dict] = None) -> Any:
        url = f"{self.base_url}/api/{resource.lstrip('/')}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise UpstreamDataError(f"GET {resource} failed: {exc}") from exc
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamDataError(f"GET {resource} returned non-JSON body") from exc

    def whoami(self) -> dict:
        """Current user; cheapest authenticated call, used for connectivity checks."""
        payload = self._get("me", params={"fields": "username,displayName"})
        if not isinstance(payload, dict):
            raise UpstreamDataError("me: expected an object")
        return payload

    # ------------------------------------------------------------------
    # Tracked entities
    # ------------------------------------------------------------------

    def fetch_tracked_entity(self, tei_id: str) -> dict:
        payload = self._get(
            f"trackedEntityInstances/{tei_id}",
            params={"fields": ",".join(TRACKED_ENTITY_FIELDS)},
        )
        if not isinstance(payload, dict):
            raise UpstreamDataError(f"Tracked entity {tei_id}: expected an object")
        return payload

    def list_tracked_entity_ids(self, org_unit: str = DEFAULT_ORG_UNIT,
                                program: str = DEFAULT_PROGRAM,
                                page_size: int = 200) -> list[str]:
        """All tracked-entity ids enrolled in *program* under *org_unit* (descendants included)."""
        ids: list[str] = []
        page = 1
        while True:
            payload = self._get("trackedEntityInstances", params={
                "ou": org_unit,
                "ouMode": "DESCENDANTS",
                "program": program,
                "fields": "trackedEntityInstance",
                "page": page,
                "pageSize": page_size,
                "totalPages": "true",
            })
            instances = payload.get("trackedEntityInstances") if isinstance(payload, dict) else None
            if not isinstance(instances, list):
                raise UpstreamDataError("trackedEntityInstances listing has no instance array")
            ids.extend(str(i["trackedEntityInstance"]) for i in instances
                       if isinstance(i, dict) and i.get("trackedEntityInstance"))

            page_count = (payload.get("pager") or {}).get("pageCount", page)
            if page >= int(page_count) or not instances:
                break
            page += 1
        logger.info("Listed %d tracked entities under %s / %s", len(ids), org_unit, program)
        return ids

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def fetch_data_element_names(self) -> dict[str, str]:
        payload = self._get("dataElements", params={
            "fields": "id,name,displayName",
            "paging": "false",
        })
        elements = payload.get("dataElements") if isinstance(payload, dict) else None
        if not isinstance(elements, list):
            raise UpstreamDataError("Expected dataElements to be an array")
        names: dict[str, str] = {}
        for element in elements:
            if not isinstance(element, dict) or not element.get("id"):
                continue
            names[str(element["id"])] = str(element.get("displayName") or element.get("name") or element["id"])
        return names
