# agent/api_client.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from .models import ClaimedRun


class APIError(Exception):
    """Raised when gateway requests fail."""
    pass


class APIClient:
    """HTTP client for communicating with the gateci event gateway."""

    def __init__(self, base_url: str, agent_id: str, timeout: float = 60.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the gateway (e.g., "http://localhost:8000")
            agent_id: Unique identifier for this agent instance
            timeout: Socket timeout per request, in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.agent_id = agent_id
        self.timeout = timeout

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        """
        Make an HTTP request to the gateway.

        Returns:
            Parsed JSON response as dictionary ({} for an empty body, e.g. 204)

        Raises:
            APIError: If the request fails
        """
        url = urljoin(self.base_url + "/", path.lstrip("/"))
        req_data = json.dumps(data).encode("utf-8") if data is not None else None
        req = urllib.request.Request(
            url,
            data=req_data,
            headers={"Content-Type": "application/json"},
            method=method,
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode("utf-8")
                return json.loads(body) if body else {}
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise APIError(f"API request failed: {e.code} {e.reason}. {error_body}") from e
        except urllib.error.URLError as e:
            raise APIError(f"Network error: {e.reason}") from e
        except json.JSONDecodeError as e:
            raise APIError(f"Invalid JSON response: {e}") from e

    def claim_run(self) -> Optional[ClaimedRun]:
        """
        Claim the next queued run.

        Returns:
            ClaimedRun if one is available, None otherwise (204)
        """
        response = self._request("POST", "/runs/claim", data={"agent_id": self.agent_id})
        if not response:
            return None
        try:
            return ClaimedRun.from_dict(response)
        except (KeyError, ValueError) as e:
            raise APIError(f"Invalid claim response: {e}") from e

    def complete_run(self, run_id: str, jobs: List[Dict[str, Any]]) -> dict:
        """Report every job's terminal result. Returns the aggregated run."""
        return self._request(
            "POST",
            f"/runs/{run_id}/complete",
            data={"agent_id": self.agent_id, "jobs": jobs},
        )
