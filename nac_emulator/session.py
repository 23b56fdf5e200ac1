"""HTTP collaborator: validation certificate, session-info exchange and binary download."""

from __future__ import annotations

import logging
import plistlib
from typing import Protocol
from xml.parsers.expat import ExpatError

import requests

from nac_emulator.errors import SessionError

logger = logging.getLogger(__name__)

CERT_URL = "http://static.ess.apple.com/identity/validation/cert-1.0.plist"
SESSION_INFO_URL = (
    "https://identity.ess.apple.com/WebObjects/TDIdentityService.woa/wa/initializeValidation"
)
DEFAULT_TIMEOUT = 30.0


class ValidationSession(Protocol):
    def certificate(self) -> bytes: ...

    def session_info(self, request: bytes) -> bytes: ...


def _plist_field(content: bytes, key: str, url: str) -> bytes:
    try:
        payload = plistlib.loads(content)
    except (plistlib.InvalidFileException, ExpatError, ValueError) as exc:
        raise SessionError(f"{url}: response is not a property list: {exc}") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get(key), bytes):
        raise SessionError(f"{url}: response has no '{key}' data")
    return payload[key]


class AppleValidationSession:
    """Talks to the identity service the way a registering device would."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        verify: bool = True,
        http: requests.Session | None = None,
    ) -> None:
        self.timeout = timeout
        self.verify = verify
        self.http = http if http is not None else requests.Session()

    def certificate(self) -> bytes:
        logger.debug("fetching validation certificate from %s", CERT_URL)
        try:
            resp = self.http.get(CERT_URL, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise SessionError(f"certificate request failed: {exc}") from exc
        return _plist_field(resp.content, "cert", CERT_URL)

    def session_info(self, request: bytes) -> bytes:
        body = plistlib.dumps({"session-info-request": bytes(request)})
        logger.debug("posting %d byte session-info request", len(request))
        try:
            resp = self.http.post(
                SESSION_INFO_URL, data=body, timeout=self.timeout, verify=self.verify
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise SessionError(f"session-info request failed: {exc}") from exc
        return _plist_field(resp.content, "session-info", SESSION_INFO_URL)


def download_binary(url: str, timeout: float = DEFAULT_TIMEOUT) -> bytes:
    logger.info("downloading %s", url)
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise SessionError(f"download of {url} failed: {exc}") from exc
    return resp.content
