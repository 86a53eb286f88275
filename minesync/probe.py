"""
probe.py - Client for the mining service's start-session endpoint.

POSTs to /api/proof_of_presences with the account's bearer token. Every
outcome, including transport errors and non-JSON bodies, is reshaped into a
ProbeResult so callers only branch on ``ok``.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import httpx

logger = logging.getLogger("probe")

DEFAULT_PROBE_URL = "https://socialchain.app"
PROBE_PATH = "/api/proof_of_presences"
PROBE_TIMEOUT_SEC = 30.0
USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 18_3_1 like Mac OS X) "
    "AppleWebKit/605.1.15 (KHTML, like Gecko) Mobile/15E148"
)


@dataclass
class ProbeResult:
    ok: bool
    data: dict = field(default_factory=dict)
    error: Optional[str] = None
    status_code: Optional[int] = None

    def to_dict(self) -> dict:
        result = {"success": self.ok, "status_code": self.status_code}
        if self.ok:
            result["data"] = self.data
        else:
            result["error"] = self.error
        return result


class ProbeClient:
    """Async HTTP client for starting a mining session."""

    def __init__(
        self,
        base_url: str = DEFAULT_PROBE_URL,
        timeout_sec: float = PROBE_TIMEOUT_SEC,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_sec,
            transport=transport,
            headers={
                "User-Agent": USER_AGENT,
                "Accept": "application/json, text/plain, */*",
            },
        )

    async def start_mining(self, access_token: str) -> ProbeResult:
        if not access_token:
            return ProbeResult(ok=False, error="No access token available for this account")
        try:
            resp = await self._client.post(
                PROBE_PATH,
                json={"recaptcha_token": None},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            logger.warning("Probe request failed: %s", e)
            return ProbeResult(ok=False, error=str(e) or type(e).__name__)

        if resp.status_code >= 400:
            return ProbeResult(
                ok=False,
                error=f"API returned status {resp.status_code}: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError:
            return ProbeResult(
                ok=False, error="Probe returned a non-JSON body", status_code=resp.status_code,
            )
        if not isinstance(data, dict):
            return ProbeResult(
                ok=False,
                error=f"Probe returned unexpected JSON type: {type(data).__name__}",
                status_code=resp.status_code,
            )
        return ProbeResult(ok=True, data=data, status_code=resp.status_code)

    async def close(self):
        await self._client.aclose()


def _error_text(resp: httpx.Response) -> str:
    """Prefer the service's own error message over the raw body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:240].strip()
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if isinstance(body.get(key), str):
                return body[key]
    return resp.text[:240].strip()
