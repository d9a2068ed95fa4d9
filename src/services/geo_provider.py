"""
Geography / anonymizing-network verdict providers and client metadata collectors.
The admission gate consumes a verdict and a confidence score; it never performs
geolocation itself.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config.config import config
from src.data.schemas import ClientContext
from src.exceptions import ExternalServiceError
from src.utils.retry import RetryConfig, retry_call

logger = logging.getLogger(__name__)


@dataclass
class GeoVerdict:
    """Coarse geography and anonymizer likelihood for one address."""
    country: str | None
    is_anonymizing_network: bool = False
    confidence: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "country": self.country,
            "is_anonymizing_network": self.is_anonymizing_network,
            "confidence": self.confidence,
            **({"details": self.details} if self.details else {}),
        }


class GeoVerdictProvider(ABC):
    """Abstract verdict provider."""

    @abstractmethod
    def resolve(self, ip_address: str | None) -> GeoVerdict:
        """
        Resolve a verdict for an address.

        Raises:
            ExternalServiceError: If the lookup cannot be completed
        """


class ClientMetadataCollector(ABC):
    """Abstract collector producing an opaque audit blob."""

    @abstractmethod
    def collect(self, context: ClientContext) -> dict[str, Any]:
        """Return JSON-serializable metadata stored verbatim on the link."""


# Anonymizer confidence by privacy signal, strongest first.
_PRIVACY_CONFIDENCE = (
    ("tor", 100.0),
    ("relay", 95.0),
    ("vpn", 90.0),
    ("proxy", 80.0),
    ("hosting", 60.0),
)


class IPInfoVerdictProvider(GeoVerdictProvider):
    """Verdicts from the ipinfo.io HTTP API."""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: int | None = None,
        retry_cfg: RetryConfig | None = None,
    ):
        self.base_url = (base_url or config.admission.ipinfo_url).rstrip("/")
        self.token = token if token is not None else config.admission.ipinfo_token
        self.timeout = timeout or config.admission.lookup_timeout_seconds
        self.retry_cfg = retry_cfg or RetryConfig(
            retry_on=(requests.exceptions.ConnectionError, requests.exceptions.Timeout)
        )

        self.session = requests.Session()
        retry_strategy = Retry(
            total=2,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if not self.token:
            logger.warning("IPINFO_API_KEY is not set; privacy detection may be unavailable")

    def resolve(self, ip_address: str | None) -> GeoVerdict:
        if not ip_address:
            return GeoVerdict(country=None)

        try:
            payload = retry_call(self._fetch, ip_address, cfg=self.retry_cfg)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise ExternalServiceError("ipinfo", f"lookup for {ip_address} failed after retries: {e}") from e
        return self._to_verdict(payload)

    def _fetch(self, ip_address: str) -> dict[str, Any]:
        url = f"{self.base_url}/{ip_address}"
        params = {"token": self.token} if self.token else None
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            raise ExternalServiceError("ipinfo", f"HTTP error {response.status_code}", ip=ip_address) from e
        except requests.exceptions.JSONDecodeError as e:
            raise ExternalServiceError("ipinfo", "Invalid JSON response", ip=ip_address) from e

    @staticmethod
    def _to_verdict(payload: dict[str, Any]) -> GeoVerdict:
        privacy = payload.get("privacy") or {}
        confidence = 0.0
        for signal, score in _PRIVACY_CONFIDENCE:
            if privacy.get(signal):
                confidence = score
                break
        country = payload.get("country")
        return GeoVerdict(
            country=country.upper() if country else None,
            is_anonymizing_network=confidence > 0,
            confidence=confidence,
            details={k: v for k, v in payload.items() if k in ("city", "region", "org", "privacy")},
        )


class StaticVerdictProvider(GeoVerdictProvider):
    """Fixed verdicts per address, for development and tests."""

    def __init__(self, verdicts: dict[str, GeoVerdict] | None = None, default: GeoVerdict | None = None):
        self.verdicts = verdicts or {}
        self.default = default or GeoVerdict(country=None)
        self.calls: list[str | None] = []

    def resolve(self, ip_address: str | None) -> GeoVerdict:
        self.calls.append(ip_address)
        return self.verdicts.get(ip_address or "", self.default)


class HeaderMetadataCollector(ClientMetadataCollector):
    """Collects user agent, language headers and caller-supplied extras."""

    _header_keys = ("accept-language", "referer", "sec-ch-ua", "sec-ch-ua-platform")

    def collect(self, context: ClientContext) -> dict[str, Any]:
        headers = {k.lower(): v for k, v in context.headers.items()}
        return {
            "user_agent": context.user_agent,
            "headers": {k: headers[k] for k in self._header_keys if k in headers},
            **context.extra,
        }
