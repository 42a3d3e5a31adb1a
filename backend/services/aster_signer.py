"""Aster exchange request signing.

Two credential schemes authenticate the same canonical message
``timestamp \\n METHOD \\n path \\n sha256(body)``:

* wallet: EVM personal-sign over the message with the account's private key
  (address, timestamp and signature travel as headers)
* API key: HMAC-SHA256 of the message with the API secret

The exchange has moved its endpoints around more than once, so a 404 on the
requested path is retried against the rewrites in ``FALLBACK_RULES``. If the
wallet scheme runs out of variants and an API-key pair is configured, the
whole chain is retried under the API-key scheme.

Order placement and the Binance-style private reads use the native
query-string signature instead (``signed_get`` / ``signed_post``).
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from urllib.parse import urlencode

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct

from backend.utils.constants import RECV_WINDOW_MS

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Exchange base URL or credentials are missing."""


# ---------------------------------------------------------------------------
# Endpoint fallback table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PathRewrite:
    """One alternate path to try after a 404.

    ``match`` is "prefix" or "contains". ``template`` may use ``{path}`` (the
    original path) and ``{rest}`` (the path with the prefix removed).
    """
    match: str
    pattern: str
    template: str

    def apply(self, path: str) -> str | None:
        if self.match == "prefix":
            if not path.startswith(self.pattern):
                return None
            return self.template.format(path=path, rest=path[len(self.pattern):])
        if self.match == "contains":
            if self.pattern not in path:
                return None
            return self.template.format(path=path, rest=path)
        raise ValueError(f"Unknown rewrite match kind: {self.match}")


FALLBACK_RULES: tuple[PathRewrite, ...] = (
    # /v1/futures/X -> /fapi/v1/X
    PathRewrite("prefix", "/v1/futures", "/fapi/v1{rest}"),
    # /v1/X -> /api/v1/X
    PathRewrite("prefix", "/v1", "/api{path}"),
    # positions live under positionRisk on the Binance-style API
    PathRewrite("contains", "/positions", "/fapi/v1/positionRisk"),
    PathRewrite("contains", "/positions", "/fapi/v2/positionRisk"),
    PathRewrite("contains", "/account", "/fapi/v1/account"),
)


def fallback_paths(path: str, rules: tuple[PathRewrite, ...] = FALLBACK_RULES) -> list[str]:
    """Ordered alternates for ``path``, excluding the path itself."""
    out: list[str] = []
    for rule in rules:
        alt = rule.apply(path)
        if alt and alt != path and alt not in out:
            out.append(alt)
    return out


# ---------------------------------------------------------------------------
# Signing helpers
# ---------------------------------------------------------------------------

def body_to_text(body) -> str:
    if body is None:
        return ""
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"))


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def hmac_sha256_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def canonical_message(timestamp: int, method: str, path: str, body_text: str) -> str:
    return f"{timestamp}\n{method.upper()}\n{path}\n{sha256_hex(body_text)}"


def wallet_address(private_key: str) -> str:
    """EVM address for a hex private key (with or without 0x)."""
    return Account.from_key(private_key).address


def personal_sign(private_key: str, message: str) -> str:
    """Recoverable secp256k1 signature over the "Ethereum Signed Message" digest.

    Returns 65 bytes as 0x-hex: r || s || v, with v in {27, 28}.
    """
    signed = Account.sign_message(encode_defunct(text=message), private_key=private_key)
    return "0x" + bytes(signed.signature).hex()


@dataclass(frozen=True)
class AsterCredentials:
    base_url: str
    private_key: str = ""
    api_key: str = ""
    api_secret: str = ""

    @property
    def has_wallet(self) -> bool:
        return bool(self.private_key)

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key and self.api_secret)

    @classmethod
    def from_settings(cls, settings) -> "AsterCredentials":
        return cls(
            base_url=settings.aster_api_base.strip().rstrip("/"),
            private_key=settings.aster_private_key.strip(),
            api_key=settings.aster_api_key.strip(),
            api_secret=settings.aster_api_secret.strip(),
        )


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------

class AsterSigner:
    """Builds and sends authenticated requests to the Aster API."""

    def __init__(
        self,
        credentials: AsterCredentials,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock=time.time,
        rules: tuple[PathRewrite, ...] = FALLBACK_RULES,
    ):
        self.credentials = credentials
        self.clock = clock
        self.rules = rules
        self._client = httpx.AsyncClient(
            base_url=credentials.base_url or "http://unconfigured.invalid",
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self):
        await self._client.aclose()

    @property
    def has_api_key(self) -> bool:
        return self.credentials.has_api_key

    def _require_base(self):
        if not self.credentials.base_url:
            raise ConfigurationError("Aster API base URL is not configured")

    def _require_api_key(self):
        self._require_base()
        if not self.credentials.has_api_key:
            raise ConfigurationError("Aster API key/secret are not configured")

    # -- header-signed requests -------------------------------------------

    def wallet_headers(self, timestamp: int, canonical: str) -> dict[str, str]:
        pk = self.credentials.private_key
        return {
            "content-type": "application/json",
            "x-aster-address": wallet_address(pk),
            "x-aster-timestamp": str(timestamp),
            "x-aster-signature": personal_sign(pk, canonical),
        }

    def api_key_headers(self, timestamp: int, canonical: str) -> dict[str, str]:
        return {
            "content-type": "application/json",
            "x-aster-key": self.credentials.api_key,
            "x-aster-timestamp": str(timestamp),
            "x-aster-signature": hmac_sha256_hex(self.credentials.api_secret, canonical),
        }

    async def _probe(
        self, method: str, path: str, headers: dict[str, str], content: str
    ) -> httpx.Response:
        """Send to ``path`` and then each fallback until a non-404 answer."""
        response = None
        for candidate in [path, *fallback_paths(path, self.rules)]:
            response = await self._client.request(
                method, candidate, headers=headers, content=content or None
            )
            if response.status_code != 404:
                if candidate != path:
                    logger.info(f"Aster {method} {path} answered on fallback {candidate}")
                return response
            logger.debug(f"Aster {method} {candidate} -> 404")
        return response

    async def _wallet_attempt(
        self, method: str, path: str, ts: int, canonical: str, content: str
    ) -> httpx.Response | None:
        """Run the fallback chain under wallet auth.

        Returns None when the attempt failed and the API-key scheme should
        take over; re-raises when there is nothing to fall back to.
        """
        has_api_key = self.credentials.has_api_key
        try:
            headers = self.wallet_headers(ts, canonical)
        except Exception as e:
            if not has_api_key:
                raise ConfigurationError(f"Invalid Aster private key ({type(e).__name__})") from e
            logger.warning(f"Wallet signing failed ({type(e).__name__}); trying API key")
            return None
        try:
            return await self._probe(method, path, headers, content)
        except httpx.HTTPError as e:
            if not has_api_key:
                raise
            logger.warning(f"Aster {method} {path} wallet request failed: {e}; trying API key")
            return None

    async def request(self, method: str, path: str, body=None) -> httpx.Response:
        """Authenticated request under whichever scheme is configured.

        Raises ConfigurationError when no base URL or no credentials exist.
        When every variant 404s under the wallet scheme and there is no
        API-key pair, the last 404 response is returned as-is.
        """
        self._require_base()
        creds = self.credentials
        if not creds.has_wallet and not creds.has_api_key:
            raise ConfigurationError("Aster auth not configured")

        method = method.upper()
        path = path if path.startswith("/") else f"/{path}"
        content = body_to_text(body)
        ts = int(self.clock())
        canonical = canonical_message(ts, method, path, content)

        if creds.has_wallet:
            response = await self._wallet_attempt(method, path, ts, canonical, content)
            if response is not None:
                if response.status_code != 404 or not creds.has_api_key:
                    return response
                logger.info(f"Aster {method} {path}: wallet auth exhausted, trying API key")

        headers = self.api_key_headers(ts, canonical)
        return await self._probe(method, path, headers, content)

    # -- Binance-style query signing ----------------------------------------

    def signed_query(self, params: dict | None = None) -> str:
        """Query string with timestamp, recvWindow and the HMAC signature appended."""
        self._require_api_key()
        query = dict(params or {})
        query["timestamp"] = int(self.clock() * 1000)
        query["recvWindow"] = RECV_WINDOW_MS
        encoded = urlencode(query)
        signature = hmac_sha256_hex(self.credentials.api_secret, encoded)
        return f"{encoded}&signature={signature}"

    async def signed_get(self, path: str, params: dict | None = None) -> httpx.Response:
        query = self.signed_query(params)
        return await self._client.get(
            f"{path}?{query}", headers={"X-MBX-APIKEY": self.credentials.api_key}
        )

    async def signed_post(self, path: str, params: dict) -> httpx.Response:
        query = self.signed_query(params)
        return await self._client.post(
            path,
            content=query,
            headers={
                "X-MBX-APIKEY": self.credentials.api_key,
                "content-type": "application/x-www-form-urlencoded",
            },
        )

    async def public_get(self, path: str, params: dict | None = None) -> httpx.Response:
        self._require_base()
        return await self._client.get(path, params=params)


def build_signer(settings, transport: httpx.AsyncBaseTransport | None = None) -> AsterSigner:
    """Signer for the configured exchange account."""
    return AsterSigner(
        AsterCredentials.from_settings(settings),
        timeout=settings.http_timeout_seconds,
        transport=transport,
    )
