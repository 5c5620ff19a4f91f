"""
HTTP MAC access authentication used by Tent app authorizations.
"""

import base64
import hashlib
import hmac
import secrets
import time
from typing import Generator

import httpx

ALGORITHMS = {
    "hmac-sha-256": hashlib.sha256,
    "hmac-sha-1": hashlib.sha1,
}


def normalized_request_string(ts: str, nonce: str, method: str, request_uri: str, host: str, port: int, ext: str = "") -> str:
    return "\n".join([ts, nonce, method.upper(), request_uri, host.lower(), str(port), ext]) + "\n"


def sign(mac_key: str, algorithm: str, normalized: str) -> str:
    try:
        digest = ALGORITHMS[algorithm]
    except KeyError as exc:
        raise ValueError(f"Unsupported MAC algorithm: {algorithm}") from exc
    mac = hmac.new(mac_key.encode(), normalized.encode(), digest).digest()
    return base64.b64encode(mac).decode()


class MacAuth(httpx.Auth):
    """Signs each request with the credential's MAC key"""

    def __init__(self, mac_key_id: str, mac_key: str, algorithm: str = "hmac-sha-256"):
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Unsupported MAC algorithm: {algorithm}")
        self.mac_key_id = mac_key_id
        self.mac_key = mac_key
        self.algorithm = algorithm

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = self.authorization_header(request)
        yield request

    def authorization_header(self, request: httpx.Request) -> str:
        ts = str(int(time.time()))
        nonce = secrets.token_hex(4)
        url = request.url
        port = url.port or (443 if url.scheme == "https" else 80)
        normalized = normalized_request_string(
            ts, nonce, request.method, url.raw_path.decode("ascii"), url.host, port
        )
        mac = sign(self.mac_key, self.algorithm, normalized)
        return f'MAC id="{self.mac_key_id}", ts="{ts}", nonce="{nonce}", mac="{mac}"'
