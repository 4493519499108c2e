"""HTTP client for the external RTMP media server."""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from typing import Any, Dict, Optional, Tuple

import requests

from .config import MediaServerConfig
from .errors import MediaServerError
from .models import RepublishRule

logger = logging.getLogger(__name__)

STATS_ENDPOINTS = ("/stats", "/stats.json", "/status", "/info")
REPUBLISH_PATH = "/manage/rtmp/republish"
RELOAD_PATH = "/control/reload"


class MediaServerClient:
    """Wrapper around the media server's management, stats and control endpoints."""

    def __init__(self, config: MediaServerConfig, http: Optional[requests.Session] = None):
        self.config = config
        self.http = http or requests.Session()
        self.http.headers.update({"User-Agent": "stream-republisher-monitor"})

    def _auth_params(self) -> Dict[str, str]:
        if not self.config.api_token:
            return {}
        salt = str(secrets.randbelow(1_000_000))
        digest = hashlib.md5(f"{salt}/{self.config.api_token}".encode()).digest()  # noqa: S324
        return {"salt": salt, "hash": base64.b64encode(digest).decode()}

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.config.api_url}{path}"
        logger.debug("Media server %s %s", method, path)
        try:
            response = self.http.request(
                method,
                url,
                params=self._auth_params(),
                json=payload,
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            raise MediaServerError(f"{method} {path} failed: {exc}") from exc
        if not response.ok:
            raise MediaServerError(
                f"{method} {path} returned {response.status_code} {response.reason}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            return response.text

    def list_rules(self) -> Any:
        return self._request("GET", REPUBLISH_PATH)

    def get_rule(self, rule_id: str) -> Any:
        return self._request("GET", f"{REPUBLISH_PATH}/{rule_id}")

    def create_rule(self, rule: RepublishRule) -> Any:
        logger.info(
            "Creating republishing rule %s/%s -> %s:%s/%s",
            rule.src_app,
            rule.src_stream,
            rule.dest_addr,
            rule.dest_port,
            rule.dest_app,
        )
        return self._request(
            "POST",
            REPUBLISH_PATH,
            {
                "src_app": rule.src_app,
                "src_stream": rule.src_stream,
                "dest_addr": rule.dest_addr,
                "dest_port": rule.dest_port,
                "dest_app": rule.dest_app,
                "dest_stream": rule.dest_stream,
            },
        )

    def delete_rule(self, rule_id: str) -> Any:
        logger.info("Deleting republishing rule %s", rule_id)
        return self._request("DELETE", f"{REPUBLISH_PATH}/{rule_id}")

    def request_reload(self) -> None:
        url = f"{self.config.stats_url}{RELOAD_PATH}"
        try:
            response = self.http.post(url, timeout=self.config.reload_timeout)
        except requests.RequestException as exc:
            raise MediaServerError(f"reload request failed: {exc}") from exc
        if not response.ok:
            raise MediaServerError(f"reload returned {response.status_code}", status_code=response.status_code)
        logger.info("Media server reloaded via HTTP control interface")

    def fetch_stats(self, deadline: Optional[float] = None) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Try every candidate stats path; the first JSON object wins.

        ``deadline`` is a ``time.monotonic()`` value bounding the whole attempt.
        Returns ``(endpoint, document)`` or ``None`` when nothing usable answered.
        """
        for endpoint in STATS_ENDPOINTS:
            timeout = self.config.request_timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Stats poll budget exhausted before %s", endpoint)
                    return None
                timeout = min(timeout, remaining)
            try:
                response = self.http.get(
                    f"{self.config.stats_url}{endpoint}",
                    headers={"Accept": "application/json"},
                    timeout=timeout,
                )
            except requests.RequestException as exc:
                logger.debug("Stats endpoint %s not available: %s", endpoint, exc)
                continue
            if not response.ok:
                logger.debug("Stats endpoint %s returned %s", endpoint, response.status_code)
                continue
            try:
                document = response.json()
            except ValueError:
                logger.debug("Stats endpoint %s returned non-JSON body", endpoint)
                continue
            if isinstance(document, dict):
                logger.debug("Fetched stats from %s", endpoint)
                return endpoint, document
        logger.warning("No working stats endpoint found on %s", self.config.stats_url)
        return None

    def test_connection(self) -> Dict[str, Any]:
        try:
            rules = self.list_rules()
        except MediaServerError as exc:
            logger.error("Media server API connection test failed: %s", exc)
            return {"success": False, "endpoint": self.config.api_url, "error": str(exc)}
        rules_count = len(rules) if isinstance(rules, list) else 0
        return {"success": True, "endpoint": self.config.api_url, "rules_count": rules_count}
