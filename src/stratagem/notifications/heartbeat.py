"""Heartbeat pings for scheduled jobs.

Healthchecks.io URLs get /<job>, /<job>/start and /<job>/fail; Cronitor URLs
get ?state=complete|fail; anything else gets /<job> with ?status=fail on failure.
"""

from __future__ import annotations

import logging

import httpx

logger = logging.getLogger(__name__)


def _is_healthchecks(base_url: str) -> bool:
    return "hc-ping.com" in base_url or "healthchecks.io" in base_url


def heartbeat_url(base_url: str, job_name: str, success: bool = True) -> str:
    if _is_healthchecks(base_url):
        url = f"{base_url}/{job_name}"
        return url if success else f"{url}/fail"
    if "cronitor.link" in base_url or "cronitor.io" in base_url:
        state = "complete" if success else "fail"
        return f"{base_url}/{job_name}?state={state}"
    url = f"{base_url}/{job_name}"
    return url if success else f"{url}?status=fail"


async def _get(url: str, timeout: float) -> bool:
    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(url)
        return response.is_success


async def ping_heartbeat(base_url: str | None, job_name: str, success: bool = True, timeout: float = 5.0) -> bool:
    """Report job completion. Returns True when unconfigured or the ping succeeded."""
    if not base_url:
        return True
    try:
        return await _get(heartbeat_url(base_url, job_name, success), timeout)
    except httpx.HTTPError as e:
        logger.warning(f"Heartbeat ping failed for {job_name}: {e}")
        return False


async def ping_heartbeat_start(base_url: str | None, job_name: str, timeout: float = 5.0) -> bool:
    """Signal job start where the service supports it."""
    if not base_url or not _is_healthchecks(base_url):
        return True
    try:
        return await _get(f"{base_url}/{job_name}/start", timeout)
    except httpx.HTTPError as e:
        logger.warning(f"Heartbeat start ping failed for {job_name}: {e}")
        return False
