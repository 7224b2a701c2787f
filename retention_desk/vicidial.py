import logging
from typing import Dict, NamedTuple, Optional

import requests
from django.conf import settings

from retention_desk.constants import VICIDIAL_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)


class VicidialResult(NamedTuple):
    ok: bool
    status: int
    raw: str
    parsed: Dict[str, str]


def parse_vicidial_response(raw: str) -> Dict[str, str]:
    """Collect `KEY: value` lines; later keys overwrite earlier ones."""
    parsed = {}
    for line in (raw or '').split('\n'):
        trimmed = line.strip()
        if not trimmed:
            continue
        idx = trimmed.find(':')
        if idx <= 0:
            continue
        parsed[trimmed[:idx].strip()] = trimmed[idx + 1:].strip()
    return parsed


class VicidialManager:
    def __init__(self):
        self._session = None

    @property
    def session(self):
        if self._session is None:
            logger.info("Initializing new VICIdial HTTP session...")
            self._session = requests.Session()
            self._session.headers.update({
                'Content-Type': 'application/x-www-form-urlencoded;charset=UTF-8',
            })
        return self._session

    @property
    def url(self):
        return f"{settings.VICIDIAL_BASE_URL.rstrip('/')}/non_agent_api.php"

    def api(self, function, params=None) -> Optional[VicidialResult]:
        """Call a non-agent API function. Returns None if the request never completed."""
        if not settings.VICIDIAL_BASE_URL:
            logger.error("VICIDIAL_BASE_URL is not configured")
            return None

        body = {
            'source': settings.VICIDIAL_API_SOURCE,
            'user': settings.VICIDIAL_API_USER,
            'pass': settings.VICIDIAL_API_PASS,
            'function': function,
        }
        for key, value in (params or {}).items():
            if value is None:
                continue
            body[key] = str(value)

        try:
            response = self.session.post(self.url, data=body, timeout=VICIDIAL_REQUEST_TIMEOUT)
        except requests.RequestException as e:
            logger.error(f"VICIdial {function} failed: {e}")
            self._session = None # Force a fresh session on next attempt
            return None

        raw = response.text
        return VicidialResult(
            ok=response.ok,
            status=response.status_code,
            raw=raw,
            parsed=parse_vicidial_response(raw),
        )

# Global instance
vicidial_manager = VicidialManager()
