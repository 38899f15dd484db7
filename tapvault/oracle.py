"""
Client for the threshold signing oracle that holds the protocol key.
"""
import logging
import typing as t

import requests

from .withdraw import SignatureRequest
from .errors import OracleUnavailable, OracleRejected

log = logging.getLogger(__name__)


class SigningOracle(t.Protocol):
    def sign(self, request: SignatureRequest) -> str:
        """Return the protocol signature (hex) over `request.sighash`."""
        ...


class HttpSigningOracle:
    """
    POSTs the signature request as JSON to `<url>/sign` and expects
    `{"signature": <hex>}` or `{"error": <reason>}` back.
    """

    def __init__(self, url: str, timeout: float = 30,
                 session: requests.Session | None = None):
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def sign(self, request: SignatureRequest) -> str:
        try:
            resp = self.session.post(
                f"{self.url}/sign", json=request.as_payload(), timeout=self.timeout)
        except requests.RequestException as e:
            raise OracleUnavailable(f"signing oracle unreachable: {e}")

        if resp.status_code >= 500:
            raise OracleUnavailable(
                f"signing oracle returned {resp.status_code}",
                status=resp.status_code)

        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise OracleRejected(
                f"signing oracle returned a non-object body ({resp.status_code})",
                status=resp.status_code)

        if not resp.ok or body.get("error"):
            raise OracleRejected(
                str(body.get("error") or f"signing oracle returned {resp.status_code}"),
                vault_id=request.vault_id, status=resp.status_code)

        if not (sig := body.get("signature")):
            raise OracleRejected(
                "signing oracle response has no signature", vault_id=request.vault_id)

        log.info("received protocol signature for vault %s", request.vault_id)
        return sig
