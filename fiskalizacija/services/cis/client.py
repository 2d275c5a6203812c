# fiskalizacija/services/cis/client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import ssl
import time
from dataclasses import dataclass
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.exceptions import ConnectTimeoutError, MaxRetryError, NewConnectionError
from urllib3.util.retry import Retry

from fiskalizacija.services.cis.config import FiscalConfig
from fiskalizacija.services.cis.exceptions import SubmissionOutcomeUnknown, TransportError
from fiskalizacija.services.cis.types import Environment

logger = logging.getLogger("fiskalizacija.cis")

SOAP_HEADERS = {
    "Content-Type": "text/xml; charset=utf-8",
    "SOAPAction": "",
    "Accept": "text/xml",
    "User-Agent": "Fiskalizacija/1.0 (Python/requests)",
}


@dataclass
class TransportResponse:
    """Raw HTTP answer from CIS. Any status code is handed to the parser."""

    status_code: int
    body: str
    elapsed: float = 0.0


class PinnedTrustAdapter(HTTPAdapter):
    """
    HTTPAdapter whose TLS context trusts only the given PEM bundle.

    VERIFY_X509_PARTIAL_CHAIN lets an intermediate from the bundle act as
    trust anchor, so the FINA demo chain works without its root.
    """

    def __init__(self, ca_bundle: str, **kwargs):
        self.ca_bundle = ca_bundle
        self.ssl_context = ssl.create_default_context(cafile=ca_bundle)
        self.ssl_context.verify_flags |= ssl.VERIFY_X509_PARTIAL_CHAIN
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs["ssl_context"] = self.ssl_context
        return super().init_poolmanager(*args, **kwargs)


def retry_policy(config: FiscalConfig) -> Retry:
    """
    urllib3 retry for failures before the request is on the wire.

    connect covers refused connections, DNS and connect timeouts; other
    covers the TLS handshake. read=False: once the body may have been sent
    the error is raised at once. HTTP answers of any status are returned.
    """
    retry_max = max(0, config.retry_max)
    return Retry(
        total=None,
        connect=retry_max,
        other=retry_max,
        read=False,
        redirect=0,
        status=0,
        allowed_methods=None,
        backoff_factor=config.retry_backoff,
        backoff_max=config.retry_backoff_max,
        raise_on_redirect=False,
        raise_on_status=False,
    )


def _sent_before_failure(exc: requests.RequestException) -> bool:
    """
    False when the request certainly never reached CIS (connect phase or
    TLS handshake). True when it may have been delivered.
    """
    if isinstance(exc, (requests.exceptions.ConnectTimeout, requests.exceptions.SSLError)):
        return False
    if isinstance(exc, requests.exceptions.ReadTimeout):
        return True
    if isinstance(exc, requests.exceptions.ConnectionError):
        reason = exc.args[0] if exc.args else None
        if isinstance(reason, MaxRetryError):
            reason = reason.reason
        if isinstance(reason, (NewConnectionError, ConnectTimeoutError)):
            return False
        return True
    # ChunkedEncodingError, ContentDecodingError...: the answer was being read
    return True


class CISClient:
    """
    SOAP transport for the FiskalizacijaService endpoint.

    One send() call carrying the signed RacunZahtjev. Connection retries are
    left to the adapter's Retry; the client keeps no state between sends
    apart from the pooled HTTPS connections.
    """

    def __init__(self, config: FiscalConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.url = config.url
        self.timeout = config.request_timeout
        self.retry = retry_policy(config)
        self.attempts = self.retry.connect + 1

        self.session = session or self._build_session()

        logger.info(
            "CISClient initialised environment=%s [url=%s, verify=%s, timeout=%s, "
            "retries=%s, backoff=%s, backoff_max=%s]",
            config.environment.value,
            self.url,
            config.verify,
            self.timeout,
            self.retry.connect,
            config.retry_backoff,
            config.retry_backoff_max,
        )

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(SOAP_HEADERS)

        verify = self.config.verify
        if isinstance(verify, str):
            adapter: HTTPAdapter = PinnedTrustAdapter(verify, max_retries=self.retry)
        else:
            adapter = HTTPAdapter(max_retries=self.retry)
        session.verify = verify
        session.mount("https://", adapter)
        session.mount("http://", HTTPAdapter(max_retries=self.retry))

        if self.config.environment == Environment.PRODUCTION and isinstance(verify, str):
            logger.info("PRODUCTION CIS trust restricted to bundle %s", verify)
        return session

    def __enter__(self) -> "CISClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.session.close()

    def send(self, signed_xml: bytes | str) -> TransportResponse:
        """
        POSTs the signed envelope and returns the HTTP answer.

        - Failures before the request is on the wire (connect, DNS, TLS
          handshake) are retried by the adapter up to retry_max times with
          exponential backoff; exhaustion raises TransportError.
        - Failures after it may have been delivered (read timeout,
          connection reset mid-exchange) raise SubmissionOutcomeUnknown
          and are never retried.
        - Any HTTP status is returned as is.
        """
        if isinstance(signed_xml, str):
            signed_xml = signed_xml.encode("utf-8")

        started = time.monotonic()
        try:
            response = self.session.post(
                self.url,
                data=signed_xml,
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            if _sent_before_failure(exc):
                logger.error(
                    "CIS request to %s may have been delivered but no answer was read: %s. "
                    "Outcome unknown, not retrying.",
                    self.url,
                    exc,
                )
                raise SubmissionOutcomeUnknown(
                    f"No answer from CIS after sending the request: {exc}",
                ) from exc

            logger.warning(
                "CIS unreachable after %s attempts: %s. The invoice was not delivered; "
                "check the connection before resubmitting under the same number.",
                self.attempts,
                exc,
            )
            raise TransportError(
                f"CIS unreachable after {self.attempts} attempts: {exc}",
                attempts=self.attempts,
            ) from exc

        elapsed = time.monotonic() - started
        body = response.content.decode("utf-8", errors="replace")
        logger.info("CIS answered HTTP %s in %.2fs", response.status_code, elapsed)
        logger.debug("CIS response body: %s", body)
        return TransportResponse(status_code=response.status_code, body=body, elapsed=elapsed)
