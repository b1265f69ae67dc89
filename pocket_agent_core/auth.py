"""Challenge-response authentication for physical connections.

The server issues a random, single-use challenge. The client signs it with
the private key bound to its SSH identity and returns the signature together
with the public-key fingerprint. The server verifies the signature against
the key it has on file for that identity (``AuthorizedKeys``) and issues a
time-bounded session token. Nothing is recorded for a failed attempt.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import logging
import secrets
import time
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from .errors import AuthFailed, HandshakeTimeout, ProtocolViolation, TransportLost
from .models import to_epoch_ms, utcnow
from .protocol import (
    AuthChallenge,
    AuthOk,
    AuthResponse,
    Envelope,
    ErrorPayload,
    MessageType,
    build_envelope,
    decode_envelope,
    encode_envelope,
)

if TYPE_CHECKING:
    from .config import SessionConfig
    from .transport import FrameTransport

_LOGGER = logging.getLogger(__name__)

NONCE_BYTES = 32

PublicKey = ed25519.Ed25519PublicKey | rsa.RSAPublicKey | ec.EllipticCurvePublicKey
PrivateKey = ed25519.Ed25519PrivateKey | rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey


# --------------------------------------------------------------------------
# Collaborator interfaces (client side)
# --------------------------------------------------------------------------


class Signer(Protocol):
    """Opaque handle able to sign with a private key it never exposes."""

    def sign(self, data: bytes) -> bytes: ...


class CredentialStore(Protocol):
    """Read-only view of the identity/credential vault."""

    def get_private_key_handle(self, identity_id: str) -> Signer: ...

    def get_public_key_fingerprint(self, identity_id: str) -> str: ...


class PrivateKeySigner:
    """Signer backed by an in-process ``cryptography`` private key."""

    def __init__(self, private_key: PrivateKey) -> None:
        self._key = private_key

    def sign(self, data: bytes) -> bytes:
        if isinstance(self._key, ed25519.Ed25519PrivateKey):
            return self._key.sign(data)
        if isinstance(self._key, rsa.RSAPrivateKey):
            return self._key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        return self._key.sign(data, ec.ECDSA(hashes.SHA256()))

    @property
    def fingerprint(self) -> str:
        return fingerprint_public_key(self._key.public_key())


# --------------------------------------------------------------------------
# Key helpers
# --------------------------------------------------------------------------


def fingerprint_public_key(public_key: PublicKey) -> str:
    """Return the OpenSSH ``SHA256:`` fingerprint of a public key."""
    openssh = public_key.public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    )
    blob = base64.b64decode(openssh.split()[1])
    digest = hashlib.sha256(blob).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


def challenge_signing_payload(challenge_id: str, nonce: str) -> bytes:
    """Bytes a client signs to answer a challenge."""
    return f"pocket-agent-auth:{challenge_id}:{nonce}".encode()


def verify_signature(public_key: PublicKey, signature: bytes, data: bytes) -> None:
    """Verify ``signature`` over ``data``.

    Raises:
        InvalidSignature: If verification fails.
    """
    if isinstance(public_key, ed25519.Ed25519PublicKey):
        public_key.verify(signature, data)
    elif isinstance(public_key, rsa.RSAPublicKey):
        public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key.verify(signature, data, ec.ECDSA(hashes.SHA256()))
    else:
        raise InvalidSignature("Unsupported key type")


@dataclass(frozen=True)
class AuthorizedKey:
    """Public key on file for one identity."""

    identity_id: str
    public_key: PublicKey
    fingerprint: str


class AuthorizedKeys:
    """Registry of identities allowed to connect.

    Loaded once from an OpenSSH ``authorized_keys``-style file where the
    comment field names the identity id. Read-only afterwards, so any
    number of Project workers can read it concurrently.
    """

    def __init__(self, keys: Iterable[AuthorizedKey] = ()) -> None:
        self._keys: dict[str, AuthorizedKey] = {key.identity_id: key for key in keys}

    @classmethod
    def from_public_keys(cls, keys: dict[str, PublicKey]) -> AuthorizedKeys:
        return cls(
            AuthorizedKey(
                identity_id=identity_id,
                public_key=key,
                fingerprint=fingerprint_public_key(key),
            )
            for identity_id, key in keys.items()
        )

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> AuthorizedKeys:
        entries: list[AuthorizedKey] = []
        for line_num, raw in enumerate(lines, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split()
            if len(parts) < 3:
                _LOGGER.warning("authorized_keys line %d has no identity id", line_num)
                continue
            try:
                key = serialization.load_ssh_public_key(
                    f"{parts[0]} {parts[1]}".encode()
                )
            except (ValueError, UnsupportedAlgorithm) as err:
                _LOGGER.warning("authorized_keys line %d skipped: %s", line_num, err)
                continue
            if not isinstance(
                key,
                (ed25519.Ed25519PublicKey, rsa.RSAPublicKey, ec.EllipticCurvePublicKey),
            ):
                _LOGGER.warning("authorized_keys line %d: unsupported key type", line_num)
                continue
            entries.append(
                AuthorizedKey(
                    identity_id=parts[2],
                    public_key=key,
                    fingerprint=fingerprint_public_key(key),
                )
            )
        return cls(entries)

    @classmethod
    def from_file(cls, path: Path) -> AuthorizedKeys:
        with path.open() as f:
            return cls.from_lines(f)

    def get(self, identity_id: str) -> AuthorizedKey | None:
        return self._keys.get(identity_id)

    def __contains__(self, identity_id: object) -> bool:
        return identity_id in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[AuthorizedKey]:
        return iter(self._keys.values())


# --------------------------------------------------------------------------
# Handshake
# --------------------------------------------------------------------------


@dataclass
class _Challenge:
    identity_id: str
    nonce: str
    expires_at: float


@dataclass(frozen=True)
class SessionToken:
    """Issued session token with its validity window."""

    token: str
    identity_id: str
    issued_at: datetime
    expires_at: datetime

    def remaining(self, now: datetime | None = None) -> timedelta:
        return self.expires_at - (now or utcnow())

    def __repr__(self) -> str:
        return (
            f"SessionToken(identity_id={self.identity_id!r}, "
            f"expires_at={self.expires_at.isoformat()})"
        )


class AuthHandshake:
    """Issues challenges, verifies signatures and manages session tokens.

    Usage:
        handshake = AuthHandshake.from_config(AuthorizedKeys.from_file(path), config)
        token = await handshake.authenticate(transport, "laptop", project_id="p1")
    """

    def __init__(
        self,
        authorized_keys: AuthorizedKeys,
        *,
        challenge_ttl: float = 30.0,
        token_ttl: float = 3600.0,
        handshake_timeout: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._keys = authorized_keys
        self._challenge_ttl = challenge_ttl
        self._token_ttl = token_ttl
        self._handshake_timeout = handshake_timeout
        self._clock = clock
        self._challenges: dict[str, _Challenge] = {}
        self._tokens: dict[str, SessionToken] = {}

    @classmethod
    def from_config(
        cls, authorized_keys: AuthorizedKeys, config: SessionConfig
    ) -> AuthHandshake:
        """Build a handshake using the timeouts of the ``auth`` config section."""
        return cls(
            authorized_keys,
            challenge_ttl=config.challenge_ttl,
            token_ttl=config.token_ttl,
            handshake_timeout=config.handshake_timeout,
        )

    # -------------------------------------------------------------------------
    # Challenges
    # -------------------------------------------------------------------------

    def issue_challenge(self, identity_id: str) -> AuthChallenge:
        """Create a single-use challenge for ``identity_id``."""
        self._purge_expired_challenges()
        challenge_id = secrets.token_hex(16)
        nonce = base64.b64encode(secrets.token_bytes(NONCE_BYTES)).decode("ascii")
        self._challenges[challenge_id] = _Challenge(
            identity_id=identity_id,
            nonce=nonce,
            expires_at=self._clock() + self._challenge_ttl,
        )
        return AuthChallenge(challenge_id=challenge_id, nonce=nonce)

    def _purge_expired_challenges(self) -> None:
        now = self._clock()
        expired = [cid for cid, c in self._challenges.items() if c.expires_at <= now]
        for cid in expired:
            del self._challenges[cid]

    @property
    def outstanding_challenges(self) -> int:
        return len(self._challenges)

    async def verify(self, identity_id: str, response: AuthResponse) -> SessionToken:
        """Verify a challenge response and issue a session token.

        Raises:
            AuthFailed: Unknown or expired challenge, unknown identity,
                fingerprint mismatch or bad signature.
        """
        # Single use: consumed whether or not verification succeeds.
        challenge = self._challenges.pop(response.challenge_id, None)
        if challenge is None:
            raise AuthFailed("Unknown or already used challenge", phase="handshake")
        if challenge.identity_id != identity_id:
            raise AuthFailed("Challenge issued to another identity", phase="handshake")
        if challenge.expires_at <= self._clock():
            raise AuthFailed("Challenge expired", phase="handshake")

        authorized = self._keys.get(identity_id)
        if authorized is None:
            raise AuthFailed(f"Identity not authorized: {identity_id}", phase="handshake")
        if not secrets.compare_digest(authorized.fingerprint, response.fingerprint):
            raise AuthFailed("Fingerprint does not match key on file", phase="handshake")

        try:
            signature = base64.b64decode(response.signature, validate=True)
        except (binascii.Error, ValueError) as err:
            raise AuthFailed("Signature is not valid base64", phase="handshake") from err

        data = challenge_signing_payload(response.challenge_id, challenge.nonce)
        try:
            await asyncio.to_thread(
                verify_signature, authorized.public_key, signature, data
            )
        except InvalidSignature as err:
            raise AuthFailed("Signature verification failed", phase="handshake") from err

        return self._issue_token(identity_id)

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def _issue_token(self, identity_id: str) -> SessionToken:
        now = utcnow()
        token = SessionToken(
            token=secrets.token_urlsafe(32),
            identity_id=identity_id,
            issued_at=now,
            expires_at=now + timedelta(seconds=self._token_ttl),
        )
        self._tokens[token.token] = token
        return token

    def validate(self, token: str, now: datetime | None = None) -> SessionToken | None:
        """Return the live token record, or None if unknown or expired."""
        record = self._tokens.get(token)
        if record is None:
            return None
        if (now or utcnow()) >= record.expires_at:
            del self._tokens[token]
            return None
        return record

    def renew(self, token: str) -> SessionToken:
        """Replace a live token with a fresh one.

        Raises:
            AuthFailed: If the token is unknown or already expired.
        """
        record = self.validate(token)
        if record is None:
            raise AuthFailed("Token expired or unknown", phase="renew")
        del self._tokens[token]
        return self._issue_token(record.identity_id)

    def revoke(self, token: str) -> None:
        self._tokens.pop(token, None)

    # -------------------------------------------------------------------------
    # Wire exchange
    # -------------------------------------------------------------------------

    async def authenticate(
        self,
        transport: FrameTransport,
        identity_id: str,
        *,
        project_id: str | None = None,
    ) -> SessionToken:
        """Run the challenge-response exchange over ``transport``.

        On failure an ``AUTH_FAILED`` (or ``HANDSHAKE_TIMEOUT``) error frame is
        sent and the transport is closed before the error is re-raised.
        """
        challenge = self.issue_challenge(identity_id)
        try:
            await transport.send(
                encode_envelope(build_envelope(challenge, project_id=project_id))
            )
            try:
                frame = await asyncio.wait_for(
                    transport.receive(), timeout=self._handshake_timeout
                )
            except TimeoutError as err:
                raise HandshakeTimeout(
                    "No challenge response received",
                    project_id=project_id,
                    phase="handshake",
                ) from err

            try:
                envelope = decode_envelope(frame)
            except ProtocolViolation as err:
                raise AuthFailed(
                    f"Malformed challenge response: {err}",
                    project_id=project_id,
                    phase="handshake",
                ) from err
            if envelope.type != MessageType.AUTH_RESPONSE.value or not isinstance(
                envelope.payload, AuthResponse
            ):
                raise AuthFailed(
                    f"Expected auth_response, got {envelope.type}",
                    project_id=project_id,
                    phase="handshake",
                )

            token = await self.verify(identity_id, envelope.payload)
        except (AuthFailed, HandshakeTimeout) as err:
            self._challenges.pop(challenge.challenge_id, None)
            if err.project_id is None:
                err.project_id = project_id
            _LOGGER.error("[%s] Authentication failed: %s", project_id, err)
            await self._reject(transport, err, project_id)
            raise

        try:
            await transport.send(encode_envelope(build_auth_ok(token, project_id)))
        except (TransportLost, asyncio.CancelledError):
            # The client never learned the token.
            self.revoke(token.token)
            raise
        _LOGGER.info("[%s] Identity %s authenticated", project_id, identity_id)
        return token

    async def _reject(
        self,
        transport: FrameTransport,
        err: AuthFailed | HandshakeTimeout,
        project_id: str | None,
    ) -> None:
        body = err.to_body()
        error = ErrorPayload(
            kind=body["kind"], detail=body["detail"], context=body.get("context")
        )
        try:
            await transport.send(encode_envelope(build_envelope(error, project_id=project_id)))
        except TransportLost:
            pass
        await transport.close(code=4001, reason=err.kind)


def build_auth_ok(token: SessionToken, project_id: str | None) -> Envelope:
    """Build the ``auth_ok`` envelope announcing an issued or renewed token."""
    return build_envelope(
        AuthOk(token=token.token, expires_at=to_epoch_ms(token.expires_at) or 0),
        project_id=project_id,
    )
