# backend/coveredrx/services/toolhouse.py
import asyncio
import logging
import time
from typing import Any, Dict, Optional

import requests
from pydantic import ValidationError

from coveredrx import config
from coveredrx.schemas import ToolhouseCoverageResponse
from coveredrx.services.json_extract import require_json

log = logging.getLogger("toolhouse")

TIMEOUT_MARKER = "toolhouse_timeout"
ERROR_MARKER = "toolhouse_error"
FAILURE_MARKERS = frozenset({TIMEOUT_MARKER, ERROR_MARKER})

ENVELOPE_KEYS = ("response", "answer", "content")


def failure_response(data_source: str, explanation: str) -> ToolhouseCoverageResponse:
    return ToolhouseCoverageResponse(
        is_covered=False,
        tier=None,
        copay=None,
        prior_auth_required=False,
        quantity_limits=False,
        step_therapy_required=False,
        explanation=explanation,
        data_source=data_source,
    )


def is_failure(response: ToolhouseCoverageResponse) -> bool:
    return response.data_source in FAILURE_MARKERS


def parse_coverage_reply(body: str) -> ToolhouseCoverageResponse:
    """
    Parse the agent's reply into a coverage object. Raises ValueError when no
    JSON object can be found or it does not fit the coverage shape.
    """
    data: Dict[str, Any] = require_json(body, source="retrieval agent reply")

    # {"response": "...json text..."} style envelopes
    if "is_covered" not in data:
        for key in ENVELOPE_KEYS:
            inner = data.get(key)
            if isinstance(inner, str):
                data = require_json(inner, source=f"retrieval agent '{key}' field")
                break
            if isinstance(inner, dict):
                data = inner
                break

    try:
        return ToolhouseCoverageResponse(**data)
    except ValidationError as e:
        raise ValueError(f"Retrieval agent reply does not match coverage shape: {e}") from e


class RemoteCoverageResolver:
    """Plan-specific coverage from the remote retrieval agent, fail-fast."""

    def __init__(self, api_key: Optional[str] = None, agent_url: Optional[str] = None,
                 timeout: Optional[float] = None, health_url: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key if api_key is not None else config.TOOLHOUSE_API_KEY
        self.agent_url = agent_url or config.TOOLHOUSE_AGENT_URL
        self.health_url = health_url or config.TOOLHOUSE_HEALTH_URL
        self.timeout = timeout if timeout is not None else config.TOOLHOUSE_TIMEOUT_SECONDS
        self.session = session if session is not None else requests.Session()
        if not self.api_key:
            log.warning("API key not found. Set TOOLHOUSE_API_KEY environment variable.")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _post(self, payload: Dict[str, str]) -> str:
        response = self.session.post(self.agent_url, json=payload, headers=self._headers(), timeout=self.timeout)
        response.raise_for_status()
        return response.text

    async def resolve(self, drug_name: str, plan_id: str, patient_zip: str,
                      pharmacy_zip: str) -> ToolhouseCoverageResponse:
        log.info("Checking coverage for %s on %s", drug_name, plan_id)
        if not self.api_key:
            return failure_response(ERROR_MARKER, "Remote coverage lookup is not configured")

        payload = {
            "medication_name": drug_name,
            "plan_id": plan_id,
            "patient_zip": patient_zip,
            "pharmacy_zip": pharmacy_zip,
        }
        started = time.perf_counter()
        try:
            body = await asyncio.wait_for(asyncio.to_thread(self._post, payload), timeout=self.timeout)
            coverage = parse_coverage_reply(body)
        except (asyncio.TimeoutError, requests.exceptions.Timeout):
            elapsed = int((time.perf_counter() - started) * 1000)
            log.warning("Remote lookup timed out after %dms for %s", elapsed, drug_name)
            return failure_response(TIMEOUT_MARKER, f"Remote coverage lookup timed out after {elapsed}ms")
        except Exception as e:
            log.error("Error checking coverage for %s: %s", drug_name, e)
            return failure_response(ERROR_MARKER, f"Error checking coverage: {e}")

        log.info("Remote lookup: %s is %s", drug_name,
                 "covered" if coverage.is_covered else "not covered or unknown")
        return coverage

    def health_check(self) -> bool:
        if not self.api_key:
            return False
        try:
            response = self.session.get(self.health_url, headers=self._headers(), timeout=self.timeout)
            return response.ok
        except Exception as e:
            log.error("Health check failed: %s", e)
            return False
