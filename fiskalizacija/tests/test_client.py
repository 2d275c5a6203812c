# fiskalizacija/tests/test_client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import io
from unittest.mock import Mock, patch

import requests
from django.test import SimpleTestCase
from urllib3.exceptions import (
    MaxRetryError,
    NewConnectionError,
    ProtocolError,
    ReadTimeoutError,
    SSLError,
)
from urllib3.response import HTTPResponse

from fiskalizacija.services.cis.client import SOAP_HEADERS, CISClient, PinnedTrustAdapter, retry_policy
from fiskalizacija.services.cis.config import CIS_TEST_CA_BUNDLE, CIS_TEST_URL, FiscalConfig
from fiskalizacija.services.cis.exceptions import SubmissionOutcomeUnknown, TransportError
from fiskalizacija.tests.helpers import error_response, jir_response

SIGNED = b'<?xml version="1.0" encoding="UTF-8"?><soap:Envelope/>'


def _response(body: str, status_code: int = 200) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.content = body.encode("utf-8")
    return response


def _refused_error() -> NewConnectionError:
    return NewConnectionError(None, "Failed to establish a new connection: [Errno 111] Connection refused")


def _refused() -> requests.exceptions.ConnectionError:
    return requests.exceptions.ConnectionError(MaxRetryError(None, CIS_TEST_URL, _refused_error()))


def _raw_response(body: str, status: int = 200) -> HTTPResponse:
    return HTTPResponse(
        body=io.BytesIO(body.encode("utf-8")),
        headers={"Content-Type": "text/xml; charset=utf-8"},
        status=status,
        preload_content=False,
    )


class CISClientSendTests(SimpleTestCase):
    def _client(self, *side_effect, retry_max: int = 3) -> CISClient:
        session = Mock()
        session.post.side_effect = list(side_effect)
        config = FiscalConfig(retry_max=retry_max, retry_backoff=0.5, retry_backoff_max=8.0)
        return CISClient(config, session=session)

    def test_posts_signed_bytes_to_test_endpoint(self):
        client = self._client(_response(jir_response()))
        response = client.send(SIGNED)

        self.assertEqual(response.status_code, 200)
        self.assertIn("ABC123", response.body)
        client.session.post.assert_called_once_with(CIS_TEST_URL, data=SIGNED, timeout=15.0)

    def test_str_payload_is_encoded(self):
        client = self._client(_response(jir_response()))
        client.send(SIGNED.decode("utf-8"))
        self.assertEqual(client.session.post.call_args.kwargs["data"], SIGNED)

    def test_refused_after_retries_raises_transport_error(self):
        client = self._client(_refused(), retry_max=2)
        with self.assertRaises(TransportError) as ctx:
            client.send(SIGNED)

        self.assertNotIsInstance(ctx.exception, SubmissionOutcomeUnknown)
        self.assertEqual(ctx.exception.attempts, 3)

    def test_connect_timeout_is_transport_error(self):
        client = self._client(requests.exceptions.ConnectTimeout("connect timed out"))
        with self.assertRaises(TransportError) as ctx:
            client.send(SIGNED)
        self.assertNotIsInstance(ctx.exception, SubmissionOutcomeUnknown)
        self.assertEqual(ctx.exception.attempts, 4)

    def test_tls_handshake_failure_is_transport_error(self):
        client = self._client(requests.exceptions.SSLError("handshake failure"))
        with self.assertRaises(TransportError) as ctx:
            client.send(SIGNED)
        self.assertNotIsInstance(ctx.exception, SubmissionOutcomeUnknown)

    def test_read_timeout_is_outcome_unknown(self):
        client = self._client(requests.exceptions.ReadTimeout("read timed out"), _response(jir_response()))
        with self.assertRaises(SubmissionOutcomeUnknown):
            client.send(SIGNED)
        client.session.post.assert_called_once()

    def test_connection_reset_after_sending_is_outcome_unknown(self):
        reset = requests.exceptions.ConnectionError(
            ProtocolError("Connection aborted.", ConnectionResetError(104, "Connection reset by peer"))
        )
        client = self._client(reset, _response(jir_response()))
        with self.assertRaises(SubmissionOutcomeUnknown):
            client.send(SIGNED)
        client.session.post.assert_called_once()

    def test_rejection_with_http_200_is_returned_not_retried(self):
        client = self._client(_response(error_response()), _response(jir_response()))
        response = client.send(SIGNED)

        self.assertIn("s004", response.body)
        client.session.post.assert_called_once()

    def test_http_500_is_returned_as_is(self):
        client = self._client(_response("<html>Internal Server Error</html>", status_code=500))
        response = client.send(SIGNED)
        self.assertEqual(response.status_code, 500)
        client.session.post.assert_called_once()


class RetryPolicyTests(SimpleTestCase):
    def setUp(self):
        self.retry = retry_policy(FiscalConfig(retry_max=3, retry_backoff=0.5, retry_backoff_max=8.0))

    def _fail(self, retry, error):
        return retry.increment(method="POST", url="/FiskalizacijaService", error=error)

    def test_connection_failures_are_bounded(self):
        retry = self.retry
        for _ in range(3):
            retry = self._fail(retry, _refused_error())

        with self.assertRaises(MaxRetryError) as ctx:
            self._fail(retry, _refused_error())
        self.assertIsInstance(ctx.exception.reason, NewConnectionError)

    def test_tls_failures_are_bounded(self):
        retry = self.retry
        for _ in range(3):
            retry = self._fail(retry, SSLError("handshake failure"))
        with self.assertRaises(MaxRetryError):
            self._fail(retry, SSLError("handshake failure"))

    def test_read_errors_are_not_retried(self):
        with self.assertRaises(ReadTimeoutError):
            self._fail(self.retry, ReadTimeoutError(None, "/FiskalizacijaService", "read timed out"))

        reset = ProtocolError("Connection aborted.", ConnectionResetError(104, "Connection reset by peer"))
        with self.assertRaises(ProtocolError):
            self._fail(self.retry, reset)

    def test_http_statuses_are_not_retried(self):
        self.assertFalse(self.retry.is_retry("POST", 500))
        self.assertFalse(self.retry.is_retry("POST", 503, has_retry_after=True))

    def test_backoff_grows_and_is_capped(self):
        retry = retry_policy(FiscalConfig(retry_max=10, retry_backoff=0.5, retry_backoff_max=8.0))
        delays = []
        for _ in range(7):
            retry = self._fail(retry, _refused_error())
            delays.append(retry.get_backoff_time())
        self.assertEqual(delays, [0, 1.0, 2.0, 4.0, 8.0, 8.0, 8.0])

    def test_zero_retries(self):
        retry = retry_policy(FiscalConfig(retry_max=0))
        with self.assertRaises(MaxRetryError):
            self._fail(retry, _refused_error())


@patch("urllib3.util.retry.time.sleep")
class CISClientAdapterRetryTests(SimpleTestCase):
    """Drives the real session; only the pool's socket exchange is replaced."""

    def setUp(self):
        self.client = CISClient(FiscalConfig(retry_max=3, retry_backoff=0.5, retry_backoff_max=8.0))
        self.client.session.trust_env = False
        self.addCleanup(self.client.close)

    def _exchange(self, *side_effect):
        patcher = patch(
            "urllib3.connectionpool.HTTPConnectionPool._make_request",
            side_effect=list(side_effect),
        )
        exchange = patcher.start()
        self.addCleanup(patcher.stop)
        return exchange

    def test_three_refused_connections_then_success(self, sleep):
        exchange = self._exchange(
            _refused_error(),
            _refused_error(),
            _refused_error(),
            _raw_response(jir_response()),
        )
        response = self.client.send(SIGNED)

        self.assertEqual(response.status_code, 200)
        self.assertIn("ABC123", response.body)
        self.assertEqual(exchange.call_count, 4)
        self.assertEqual([call.args[0] for call in sleep.call_args_list], [1.0, 2.0])

    def test_refused_beyond_bound_raises_transport_error(self, sleep):
        exchange = self._exchange(*[_refused_error() for _ in range(4)])
        with self.assertRaises(TransportError) as ctx:
            self.client.send(SIGNED)

        self.assertNotIsInstance(ctx.exception, SubmissionOutcomeUnknown)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual(exchange.call_count, 4)

    def test_read_timeout_is_sent_once(self, sleep):
        exchange = self._exchange(
            ReadTimeoutError(None, CIS_TEST_URL, "read timed out"),
            _raw_response(jir_response()),
        )
        with self.assertRaises(SubmissionOutcomeUnknown):
            self.client.send(SIGNED)
        self.assertEqual(exchange.call_count, 1)
        sleep.assert_not_called()

    def test_rejection_is_returned_from_first_exchange(self, sleep):
        exchange = self._exchange(_raw_response(error_response()), _raw_response(jir_response()))
        response = self.client.send(SIGNED)

        self.assertIn("s004", response.body)
        self.assertEqual(exchange.call_count, 1)


class CISClientSessionTests(SimpleTestCase):
    def test_default_session_for_test_environment(self):
        client = CISClient(FiscalConfig())
        self.addCleanup(client.close)

        self.assertEqual(client.url, CIS_TEST_URL)
        self.assertEqual(client.session.verify, str(CIS_TEST_CA_BUNDLE))
        for name, value in SOAP_HEADERS.items():
            self.assertEqual(client.session.headers[name], value)
        self.assertEqual(client.session.headers["SOAPAction"], "")

        adapter = client.session.get_adapter(CIS_TEST_URL)
        self.assertIsInstance(adapter, PinnedTrustAdapter)
        self.assertEqual(adapter.max_retries.connect, 3)
        self.assertFalse(adapter.max_retries.read)

    def test_context_manager_closes_session(self):
        session = Mock()
        with CISClient(FiscalConfig(), session=session):
            pass
        session.close.assert_called_once()
