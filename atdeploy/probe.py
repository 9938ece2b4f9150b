"""
Readiness probe for started services.

Reports whether each service answers HTTP on its local port. Any HTTP
response counts as reachable; the probe never fails a run.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import requests

from .services import SERVICES, ServiceDefinition

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    service: str
    url: str
    reachable: bool
    status_code: Optional[int] = None
    error: Optional[str] = None


def probe_services(
    services: Sequence[ServiceDefinition] = SERVICES,
    timeout: float = 5.0,
    session: Optional[requests.Session] = None,
) -> List[ProbeResult]:
    """
    Probe every service once.

    Args:
        services: Services to probe
        timeout: Per-request timeout in seconds
        session: Optional requests session

    Returns:
        One ProbeResult per service
    """
    http = session or requests.Session()
    results = []
    for service in services:
        url = f"{service.internal_url}{service.health_path}"
        try:
            response = http.get(url, timeout=timeout)
            results.append(ProbeResult(service.name, url, True, status_code=response.status_code))
            logger.info(f"{service.name} answered {response.status_code} at {url}")
        except requests.exceptions.RequestException as e:
            results.append(ProbeResult(service.name, url, False, error=str(e)))
            logger.warning(f"{service.name} not reachable at {url}: {e}")
    return results
