"""
Audit-Discrepancy Pre-Filter — push the report contract to a webhook.

The body is `report_payload(result)`: summary, statistics and the five
report lists. Engine log lines stay local.
"""

import time
import logging

import httpx

from auditfilter.export import report_payload

logger = logging.getLogger("auditfilter")

DEFAULT_RETRIES = 3
DEFAULT_TIMEOUT = 30.0
RETRY_DELAYS = [1, 3, 5]  # seconds; the last one repeats for further attempts


def _delay(attempt: int) -> int:
    return RETRY_DELAYS[min(attempt, len(RETRY_DELAYS)) - 1]


def push_report(result: dict, webhook_url: str, retries: int = DEFAULT_RETRIES,
                timeout: float = DEFAULT_TIMEOUT) -> dict:
    """POST the reports of one run; returns {status, response} or {error}.

    5xx answers and timeouts are retried up to `retries` attempts in total;
    a 4xx answer is final.
    """
    if not webhook_url:
        return {"error": "No webhook URL configured"}
    retries = max(1, int(retries))
    payload = report_payload(result)
    stats = payload["statistics"]
    logger.info(f"Webhook: sending {stats.get('discrepancies', 0)} discrepancies, "
                f"{stats.get('suspects', 0)} suspects")

    last_error = None
    for attempt in range(1, retries + 1):
        try:
            r = httpx.post(webhook_url, json=payload, timeout=timeout)
        except httpx.TimeoutException as e:
            last_error = f"Timeout: {e}"
        except httpx.HTTPError as e:
            last_error = f"Transport: {e}"
        else:
            if r.status_code < 500:
                level = logging.WARNING if r.status_code >= 400 else logging.INFO
                logger.log(level, f"Webhook HTTP {r.status_code} (attempt {attempt}): "
                                  f"{r.text[:300]}")
                return {"status": r.status_code, "response": r.text[:500]}
            last_error = f"HTTP {r.status_code}: {r.text[:300]}"

        logger.warning(f"Webhook attempt {attempt}/{retries} failed: {last_error}")
        if attempt < retries:
            time.sleep(_delay(attempt))

    return {"error": f"Failed after {retries} attempts: {last_error}"}
