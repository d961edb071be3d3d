from __future__ import annotations

import base64
import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional

import requests
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .api import TadoAuthError

logger = logging.getLogger(__name__)

TADO_AUTH_URL = "https://login.tado.com/oauth2"
TADO_CLIENT_ID = "1bb50063-6b0c-4d11-bd99-387f4a91cc46"
TADO_SCOPE = "offline_access"

DEVICE_CODE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"

# refresh this many seconds before the access token actually expires
REFRESH_MARGIN_SECONDS = 30.0
AUTH_REQUEST_TIMEOUT = 10.0

TOKEN_FILE_VERSION = 1
TOKEN_FILE_AAD = b"tado-exporter token v1"
SCRYPT_N = 2**15
SCRYPT_R = 8
SCRYPT_P = 1


class AuthError(RuntimeError):
    pass


@dataclass
class Token:
    access_token: str
    refresh_token: str
    expires_at: float
    token_type: str = "Bearer"

    def expired(self, now: Optional[float] = None, margin: float = REFRESH_MARGIN_SECONDS) -> bool:
        return (now if now is not None else time.time()) + margin >= self.expires_at

    @classmethod
    def from_response(cls, data: Dict[str, Any], now: Optional[float] = None) -> "Token":
        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError("token response is missing access_token")
        issued = now if now is not None else time.time()
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token", "")),
            expires_at=issued + float(data.get("expires_in", 600)),
            token_type=str(data.get("token_type", "Bearer")),
        )


class TokenStore:
    """Token file encrypted with AES-GCM under a key derived from a passphrase.

    The file is a small JSON envelope holding the scrypt salt, the nonce and
    the ciphertext, all base64 encoded. A fresh salt and nonce are drawn on
    every save.
    """

    def __init__(self, path: str, passphrase: str) -> None:
        if not passphrase:
            raise AuthError("a token passphrase is required (--token-passphrase or TADO_TOKEN_PASSPHRASE)")
        self.path = Path(path).expanduser()
        self._passphrase = passphrase.encode("utf-8")

    def _key(self, salt: bytes) -> bytes:
        return Scrypt(salt=salt, length=32, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P).derive(self._passphrase)

    def load(self) -> Optional[Token]:
        if not self.path.is_file():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                envelope = json.load(f)
            if envelope.get("version") != TOKEN_FILE_VERSION:
                raise ValueError(f"unsupported token file version {envelope.get('version')!r}")
            salt = base64.b64decode(envelope["salt"])
            nonce = base64.b64decode(envelope["nonce"])
            ciphertext = base64.b64decode(envelope["ciphertext"])
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("token file unreadable path=%s error=%s", self.path, e)
            return None

        try:
            plaintext = AESGCM(self._key(salt)).decrypt(nonce, ciphertext, TOKEN_FILE_AAD)
        except InvalidTag as e:
            raise AuthError(f"token file {self.path} could not be decrypted, check the token passphrase") from e

        try:
            data = json.loads(plaintext)
            return Token(
                access_token=str(data["access_token"]),
                refresh_token=str(data["refresh_token"]),
                expires_at=float(data["expires_at"]),
                token_type=str(data.get("token_type", "Bearer")),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("token file unreadable path=%s error=%s", self.path, e)
            return None

    def save(self, token: Token) -> None:
        salt = os.urandom(16)
        nonce = os.urandom(12)
        ciphertext = AESGCM(self._key(salt)).encrypt(nonce, json.dumps(asdict(token)).encode("utf-8"), TOKEN_FILE_AAD)
        envelope = {
            "version": TOKEN_FILE_VERSION,
            "salt": base64.b64encode(salt).decode("ascii"),
            "nonce": base64.b64encode(nonce).decode("ascii"),
            "ciphertext": base64.b64encode(ciphertext).decode("ascii"),
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(str(tmp), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(envelope, f)
        os.replace(tmp, self.path)


class TadoAuth(requests.auth.AuthBase):
    """Bearer-token auth for a requests session; refreshes the token on demand."""

    def __init__(
        self,
        store: TokenStore,
        token: Token,
        session: Optional[requests.Session] = None,
        auth_url: str = TADO_AUTH_URL,
        client_id: str = TADO_CLIENT_ID,
    ) -> None:
        self.store = store
        self.token = token
        self.session = session or requests.Session()
        self.auth_url = auth_url.rstrip("/")
        self.client_id = client_id
        self._lock = Lock()

    def refresh(self, timeout: Optional[float] = None) -> Token:
        if timeout is None or timeout > AUTH_REQUEST_TIMEOUT:
            timeout = AUTH_REQUEST_TIMEOUT
        try:
            resp = self.session.post(
                f"{self.auth_url}/token",
                data={
                    "client_id": self.client_id,
                    "grant_type": "refresh_token",
                    "refresh_token": self.token.refresh_token,
                },
                timeout=timeout,
            )
        except requests.RequestException as e:
            raise TadoAuthError(f"token refresh failed: {e}", "refresh token") from e
        if resp.status_code != 200:
            raise TadoAuthError(f"token refresh failed: status code {resp.status_code}", "refresh token", resp.status_code)
        try:
            token = Token.from_response(resp.json())
        except (ValueError, AuthError) as e:
            raise TadoAuthError(f"token refresh failed: {e}", "refresh token", resp.status_code) from e

        # tado rotates refresh tokens, the old one is now invalid
        self.store.save(token)
        self.token = token
        logger.info("token refreshed expires_in=%.0fs", token.expires_at - time.time())
        return token

    def current_token(self, timeout: Optional[float] = None) -> Token:
        with self._lock:
            if self.token.expired():
                self.refresh(timeout)
            return self.token

    def __call__(self, r: requests.PreparedRequest) -> requests.PreparedRequest:
        token = self.current_token()
        r.headers["Authorization"] = f"{token.token_type} {token.access_token}"
        return r


def device_login(
    session: requests.Session,
    auth_url: str = TADO_AUTH_URL,
    client_id: str = TADO_CLIENT_ID,
    notify: Optional[Callable[[str], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Token:
    """Run the OAuth 2.0 device authorization flow until the user approves it."""
    auth_url = auth_url.rstrip("/")
    try:
        resp = session.post(
            f"{auth_url}/device_authorize",
            data={"client_id": client_id, "scope": TADO_SCOPE},
            timeout=AUTH_REQUEST_TIMEOUT,
        )
        resp.raise_for_status()
        auth = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise AuthError(f"device authorization failed: {e}") from e

    device_code = auth.get("device_code")
    if not device_code:
        raise AuthError("device authorization response is missing device_code")

    url = auth.get("verification_uri_complete") or auth.get("verification_uri", "")
    logger.info("device login pending verification_url=%s", url)
    if notify is not None:
        notify(str(url))

    interval = float(auth.get("interval", 5))
    expires_at = time.monotonic() + float(auth.get("expires_in", 300))

    while time.monotonic() < expires_at:
        sleep(interval)
        try:
            resp = session.post(
                f"{auth_url}/token",
                data={"client_id": client_id, "device_code": device_code, "grant_type": DEVICE_CODE_GRANT},
                timeout=AUTH_REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            logger.warning("device login poll failed error=%s", e)
            continue

        if resp.status_code == 200:
            return Token.from_response(resp.json())

        try:
            error = resp.json().get("error", "")
        except ValueError:
            error = ""
        if error == "authorization_pending":
            continue
        if error == "slow_down":
            interval += 5.0
            continue
        raise AuthError(f"device login failed: {error or 'status code %d' % resp.status_code}")

    raise AuthError("device login expired before it was approved")


def authenticated_session(token_path: str, passphrase: str, notify: Optional[Callable[[str], None]] = None) -> requests.Session:
    store = TokenStore(token_path, passphrase)
    session = requests.Session()
    auth_session = requests.Session()

    token = store.load()
    if token is None:
        logger.info("no token found path=%s starting device login", store.path)
        token = device_login(auth_session, notify=notify)
        store.save(token)

    auth = TadoAuth(store, token, session=auth_session)
    if token.expired():
        try:
            auth.refresh()
        except TadoAuthError as e:
            logger.warning("stored token could not be refreshed error=%s starting device login", e)
            auth.token = device_login(auth_session, notify=notify)
            store.save(auth.token)

    session.auth = auth
    session.headers["Accept"] = "application/json"
    return session
