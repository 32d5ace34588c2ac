"""
Service-account bearer tokens for the Google Calendar API.

The signed assertion is built and exchanged here rather than through service_account.Credentials so the key can come straight from the environment, escaped newlines and all, and so a failed exchange surfaces as an AuthenticationFailure.
"""
from typing import Callable, Optional
import base64
import binascii
import logging
import re
import textwrap
import time

import requests
from google.auth import crypt, jwt
from google.oauth2.credentials import Credentials

from .config import BookingConfig
from .error_utils import AuthenticationFailure, MalformedKeyError

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
TOKEN_LIFETIME_SECONDS = 3600

_ARMOR = re.compile(r"-----(BEGIN|END) (RSA )?PRIVATE KEY-----")


def normalize_private_key(raw: str) -> str:
    """
    Turn private key material as it arrives from the environment into canonical PEM.

    Handles real newlines, literal '\\n' sequences, CRLF, surrounding quotes and a bare base64 body without armor.

    Raises MalformedKeyError if nothing is left after cleaning or the body is not valid base64.
    """
    if not raw or not raw.strip():
        raise MalformedKeyError("Private key is empty")
    text = raw.strip().strip('"').strip("'")
    text = text.replace("\\r", "").replace("\\n", "\n")
    label = "RSA PRIVATE KEY" if "BEGIN RSA PRIVATE KEY" in text else "PRIVATE KEY"

    body = re.sub(r"\s+", "", _ARMOR.sub("", text))
    if not body:
        raise MalformedKeyError("Private key is empty after removing PEM armor")
    try:
        base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedKeyError("Private key body is not valid base64") from None

    lines = "\n".join(textwrap.wrap(body, 64))
    return f"-----BEGIN {label}-----\n{lines}\n-----END {label}-----\n"


class CredentialSigner:
    """
    Builds an RS256 assertion for the configured service account and exchanges it for a short-lived access token.
    Nothing is cached: every call to fetch_access_token does a fresh exchange.
    """

    def __init__(self, config: BookingConfig, session: Optional[requests.Session] = None, clock: Callable[[], float] = time.time):
        self._config = config
        self._session = session or requests.Session()
        self._clock = clock

    def _signer(self) -> crypt.RSASigner:
        if not self._config.has_google_credentials:
            raise AuthenticationFailure("Google service account credentials are not configured")
        pem = normalize_private_key(self._config.private_key)
        try:
            return crypt.RSASigner.from_string(pem)
        except ValueError as e:
            raise MalformedKeyError(f"Private key could not be loaded: {e}") from e

    def claims(self, issued_at: int) -> dict:
        return {
            "iss": self._config.service_account_email,
            "scope": self._config.calendar_scope,
            "aud": self._config.token_uri,
            "iat": issued_at,
            "exp": issued_at + TOKEN_LIFETIME_SECONDS,
        }

    def build_assertion(self) -> str:
        issued_at = int(self._clock())
        assertion = jwt.encode(self._signer(), self.claims(issued_at))
        return assertion.decode("utf-8") if isinstance(assertion, bytes) else assertion

    def fetch_access_token(self) -> str:
        """
        Exchange a freshly signed assertion for a bearer token.

        Raises AuthenticationFailure on any transport error, non-2xx response, or response without an access token. There is no retry.
        """
        assertion = self.build_assertion()
        try:
            response = self._session.post(
                self._config.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                timeout=self._config.token_timeout_seconds,
            )
        except requests.RequestException as e:
            logger.error(f"Token exchange request failed: {e}")
            raise AuthenticationFailure(f"Token exchange request failed: {e}") from e

        if not response.ok:
            logger.error(f"Token exchange failed with HTTP {response.status_code}: {response.text}")
            raise AuthenticationFailure(f"Token exchange failed: {response.status_code}")

        try:
            access_token = response.json().get("access_token")
        except ValueError:
            access_token = None
        if not access_token:
            logger.error("Token endpoint response did not contain an access token")
            raise AuthenticationFailure("Token endpoint response did not contain an access token")
        logger.info(f"Access token obtained for {self._config.service_account_email}")
        return access_token

    def credentials(self) -> Credentials:
        return Credentials(token=self.fetch_access_token())
