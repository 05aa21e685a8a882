"""
DataForSEO ranked-keywords client.

One endpoint matters here: dataforseo_labs ranked_keywords, asked for the
keywords a domain ranks for, filtered by a regex over the keyword text.
Rate limits, 5xx responses and timeouts are retried with exponential backoff;
task-level errors (bad filter, unknown target) are not.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

RANKED_KEYWORDS_ENDPOINT = "dataforseo_labs/google/ranked_keywords/live"
RANKED_KEYWORDS_LIMIT = 1000

OK_STATUS = 20000
TASK_OK_STATUSES = (20000, 20100)


@dataclass
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    exponential_base: float = 2.0
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)

    def next_delay(self, delay: float) -> float:
        return min(delay * self.exponential_base, self.max_delay)


class DataForSEOError(Exception):
    """Transport, API or task failure; status_code is HTTP or DataForSEO's own."""

    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


def flatten_ranked_keyword(item: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Flatten a ranked_keywords item into
    {keyword, position, search_volume, url, cpc, competition}.

    Returns None for items without a keyword or position.
    """
    keyword_data = item.get("keyword_data") or {}
    keyword_info = keyword_data.get("keyword_info") or {}
    serp_item = (item.get("ranked_serp_element") or {}).get("serp_item") or {}

    keyword = keyword_data.get("keyword")
    position = serp_item.get("rank_absolute") or serp_item.get("rank_group")
    if not keyword or position is None:
        return None

    return {
        "keyword": keyword,
        "position": position,
        "search_volume": keyword_info.get("search_volume"),
        "url": serp_item.get("url") or "",
        "cpc": keyword_info.get("cpc"),
        "competition": keyword_info.get("competition_level"),
    }


def _result_items(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    """items of the first task's first result; [] when the task found nothing."""
    tasks = response.get("tasks") or []
    results = (tasks[0].get("result") if tasks else None) or []
    first = results[0] if results and isinstance(results[0], dict) else {}
    items = first.get("items")
    return items if isinstance(items, list) else []


def _json_body(response: httpx.Response) -> Optional[Dict[str, Any]]:
    """Parsed JSON object, or None for empty or non-JSON bodies (gateway error pages)."""
    if not response.content:
        return None
    try:
        body = response.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _check_response(response: Dict[str, Any]) -> None:
    if response.get("status_code") != OK_STATUS:
        raise DataForSEOError(
            f"API error: {response.get('status_message', 'Unknown error')}",
            status_code=response.get("status_code"),
            response=response,
        )

    for task in response.get("tasks") or []:
        status = task.get("status_code")
        if status not in TASK_OK_STATUSES:
            message = task.get("status_message", "Task error")
            logger.error(f"DataForSEO task error: {message} (status: {status})")
            raise DataForSEOError(f"Task error: {message}", status_code=status, response=response)


class DataForSEOClient:
    """
    Async client for DataForSEO ranked keywords.

    Usage:
        client = DataForSEOClient(login="your_login", password="your_password")
        rankings = await client.fetch_rankings(
            "example.com", "best widgets|buy widgets online", 2840, "en"
        )
        await client.close()
    """

    BASE_URL = "https://api.dataforseo.com/v3"

    def __init__(
        self,
        login: str,
        password: str,
        retry_config: Optional[RetryConfig] = None,
        max_connections: int = 30,
        timeout: float = 30.0,
    ):
        self.retry_config = retry_config or RetryConfig()

        token = base64.b64encode(f"{login}:{password}".encode()).decode()
        self._client = httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers={
                "Authorization": f"Basic {token}",
                "Content-Type": "application/json",
            },
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections // 2,
            ),
            timeout=httpx.Timeout(timeout),
        )
        self._closed = False

    async def close(self):
        if not self._closed:
            await self._client.aclose()
            self._closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @staticmethod
    def build_ranked_keywords_payload(
        domain: str,
        regex_filter: str,
        location_code: int,
        language_code: str,
    ) -> List[Dict[str, Any]]:
        return [{
            "target": domain,
            "location_code": location_code,
            "language_code": language_code,
            "limit": RANKED_KEYWORDS_LIMIT,
            "filters": [["keyword_data.keyword", "regex", regex_filter]],
            "order_by": ["ranked_serp_element.serp_item.rank_absolute,asc"],
        }]

    async def fetch_rankings(
        self,
        domain: str,
        regex_filter: str,
        location_code: int = 2840,
        language_code: str = "en",
    ) -> Dict[str, Any]:
        """
        Get the domain's rankings for keywords matching a regex filter.

        Keywords the domain doesn't rank for are simply absent from items.

        Returns:
            {"items": [flattened rankings], "cost": float, "task_id": str}

        Raises:
            DataForSEOError: On API error, after retries where retryable
        """
        payload = self.build_ranked_keywords_payload(domain, regex_filter, location_code, language_code)
        response = await self._post_with_retry(f"/{RANKED_KEYWORDS_ENDPOINT}", payload)

        items = [
            flat for flat in (flatten_ranked_keyword(raw) for raw in _result_items(response) if isinstance(raw, dict))
            if flat
        ]
        cost = response.get("cost") or 0
        tasks = response.get("tasks") or [{}]

        logger.info(f"Ranked keywords for {domain}: {len(items)} items, cost ${cost:.4f}")
        return {"items": items, "cost": cost, "task_id": tasks[0].get("id")}

    async def _post(self, url: str, payload: List[Dict[str, Any]]) -> Dict[str, Any]:
        logger.debug(f"POST {url}")
        try:
            response = await self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise DataForSEOError(f"Request timed out: {e}")
        except httpx.HTTPError as e:
            raise DataForSEOError(f"HTTP error: {e}")

        body = _json_body(response)

        if response.status_code != 200:
            raise DataForSEOError(
                f"API request failed: {response.status_code}",
                status_code=response.status_code,
                response=body,
            )
        if body is None:
            raise DataForSEOError("Invalid JSON response", status_code=response.status_code)

        _check_response(body)
        return body

    async def _post_with_retry(self, url: str, payload: List[Dict[str, Any]]) -> Dict[str, Any]:
        if self._closed:
            raise DataForSEOError("Client is closed")

        config = self.retry_config
        delay = config.initial_delay
        attempts = config.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return await self._post(url, payload)
            except DataForSEOError as e:
                retryable = e.status_code is None or e.status_code in config.retryable_status_codes
                if not retryable or attempt == attempts:
                    raise
                logger.warning(f"DataForSEO request failed (attempt {attempt}/{attempts}), retrying in {delay}s: {e}")
                await asyncio.sleep(delay)
                delay = config.next_delay(delay)
