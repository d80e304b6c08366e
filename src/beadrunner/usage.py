"""Admission control against the Claude usage quota.

The check is fail-open: a missing credential, a network error or an
unexpected response lets work proceed and is only logged.
"""

from __future__ import annotations

import json
import logging
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

import httpx

from beadrunner.config import UsageConfig

logger = logging.getLogger(__name__)

AdmissionResult = Literal["ok", "over"]
FIVE_HOUR_KEY = "five_hour"
SEVEN_DAY_KEY = "seven_day"


class CredentialError(RuntimeError):
    """Raised when no usable OAuth token can be read."""


def token_from_credentials(raw: str) -> str:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise CredentialError("Credentials are not valid JSON") from exc
    oauth = payload.get("claudeAiOauth") if isinstance(payload, dict) else None
    token = oauth.get("accessToken") if isinstance(oauth, dict) else None
    if not isinstance(token, str) or not token.strip():
        raise CredentialError("No OAuth token found")
    return token.strip()


class CredentialStore(ABC):
    @abstractmethod
    def read_token(self) -> str:
        """Return the OAuth access token or raise CredentialError."""


class KeychainCredentialStore(CredentialStore):
    """macOS Keychain generic password holding the credentials JSON."""

    def __init__(self, service: str) -> None:
        self.service = service

    def read_token(self) -> str:
        try:
            proc = subprocess.run(
                ["security", "find-generic-password", "-s", self.service, "-w"],
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as exc:
            raise CredentialError("macOS security tool not available") from exc
        if proc.returncode != 0:
            raise CredentialError(f"Keychain item not readable: {self.service}")
        return token_from_credentials(proc.stdout)


class FileCredentialStore(CredentialStore):
    def __init__(self, path: Path) -> None:
        self.path = path

    def read_token(self) -> str:
        try:
            raw = self.path.expanduser().read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialError(f"Cannot read {self.path}: {exc}") from exc
        return token_from_credentials(raw)


def default_credential_store(config: UsageConfig) -> CredentialStore:
    if sys.platform == "darwin":
        return KeychainCredentialStore(config.credential_service)
    return FileCredentialStore(Path(config.credentials_file))


def _utilization(payload: dict[str, Any], key: str) -> float:
    window = payload.get(key)
    if window is None:
        return 0.0
    if not isinstance(window, dict):
        raise ValueError(f"Usage window '{key}' is not an object")
    value = window.get("utilization")
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"Usage window '{key}' has non-numeric utilization")
    return float(value)


def parse_utilization(payload: Any) -> tuple[float, float]:
    """Return ``(five_hour, seven_day)`` utilization percentages."""
    if not isinstance(payload, dict):
        raise ValueError("Usage response is not a JSON object")
    return _utilization(payload, FIVE_HOUR_KEY), _utilization(payload, SEVEN_DAY_KEY)


@dataclass(slots=True)
class QuotaSnapshot:
    five_hour_utilization: float
    seven_day_utilization: float
    captured_at: float
    ttl: float
    threshold: float

    @property
    def over(self) -> bool:
        return (
            self.five_hour_utilization >= self.threshold
            or self.seven_day_utilization >= self.threshold
        )

    @property
    def result(self) -> AdmissionResult:
        return "over" if self.over else "ok"

    def expired(self, now: float) -> bool:
        return now - self.captured_at >= self.ttl

    def describe(self) -> str:
        return (
            f"5h={self.five_hour_utilization:g}% 7d={self.seven_day_utilization:g}%"
        )


class AdmissionController:
    def __init__(
        self,
        config: UsageConfig,
        *,
        credentials: CredentialStore | None = None,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.credentials = credentials or default_credential_store(config)
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(config.timeout_seconds, connect=5.0)
        )
        self._clock = clock
        self._snapshot: QuotaSnapshot | None = None

    @property
    def enabled(self) -> bool:
        return self.config.threshold > 0

    @property
    def snapshot(self) -> QuotaSnapshot | None:
        return self._snapshot

    def invalidate(self) -> None:
        self._snapshot = None

    def check_usage(self) -> AdmissionResult:
        if not self.enabled:
            return "ok"
        now = self._clock()
        if self._snapshot is not None and not self._snapshot.expired(now):
            return self._snapshot.result
        snapshot = self.fetch_snapshot()
        if snapshot is None:
            return "ok"
        self._snapshot = snapshot
        return snapshot.result

    def fetch_snapshot(self) -> QuotaSnapshot | None:
        """Query the usage endpoint; ``None`` when anything goes wrong."""
        try:
            token = self.credentials.read_token()
        except CredentialError as exc:
            logger.warning("Could not read credentials for usage check (%s), skipping", exc)
            return None

        try:
            response = self._client.get(
                self.config.endpoint,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {token}",
                    "anthropic-beta": self.config.beta_header,
                },
            )
            response.raise_for_status()
            five_hour, seven_day = parse_utilization(response.json())
        except httpx.HTTPError as exc:
            logger.warning("Usage API call failed (%s), skipping check", exc)
            return None
        except ValueError as exc:
            logger.warning("Usage API returned an unexpected payload (%s), skipping check", exc)
            return None

        return QuotaSnapshot(
            five_hour_utilization=five_hour,
            seven_day_utilization=seven_day,
            captured_at=self._clock(),
            ttl=self.config.cache_seconds,
            threshold=float(self.config.threshold),
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> AdmissionController:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
