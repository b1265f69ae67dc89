"""Tests for challenge-response authentication."""

from __future__ import annotations

import base64
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519

from pocket_agent_core.auth import (
    AuthHandshake,
    AuthorizedKeys,
    PrivateKeySigner,
    challenge_signing_payload,
    fingerprint_public_key,
)
from pocket_agent_core.config import config_from_dict
from pocket_agent_core.errors import AuthFailed, HandshakeTimeout, TransportLost
from pocket_agent_core.protocol import AuthResponse, decode_envelope

from .conftest import IDENTITY_ID, FakeKeyStore, FakeTransport, auth_responder


def answer(key, challenge, fingerprint: str | None = None) -> AuthResponse:
    signer = PrivateKeySigner(key)
    signature = signer.sign(challenge_signing_payload(challenge.challenge_id, challenge.nonce))
    return AuthResponse(
        challenge_id=challenge.challenge_id,
        signature=base64.b64encode(signature).decode("ascii"),
        fingerprint=fingerprint or signer.fingerprint,
    )


class LosesAuthOk(FakeTransport):
    """Transport that drops the auth_ok frame instead of delivering it."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.lost: list[str] = []

    async def send(self, frame: str) -> None:
        if decode_envelope(frame).type == "auth_ok":
            self.lost.append(frame)
            raise TransportLost("dropped before auth_ok")
        await super().send(frame)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestVerify:
    """Tests for AuthHandshake.verify()."""

    async def test_valid_signature(self, handshake, identity_key):
        """Test a correct signature yields a live token."""
        challenge = handshake.issue_challenge(IDENTITY_ID)

        token = await handshake.verify(IDENTITY_ID, answer(identity_key, challenge))

        assert token.identity_id == IDENTITY_ID
        assert handshake.validate(token.token) is token
        assert handshake.outstanding_challenges == 0

    async def test_ecdsa_key(self):
        """Test ECDSA keys are accepted as well as Ed25519."""
        key = ec.generate_private_key(ec.SECP256R1())
        handshake = AuthHandshake(AuthorizedKeys.from_public_keys({"desk": key.public_key()}))
        challenge = handshake.issue_challenge("desk")

        token = await handshake.verify("desk", answer(key, challenge))

        assert token.identity_id == "desk"

    async def test_wrong_key(self, handshake):
        """Test a signature from another key is rejected."""
        other = ed25519.Ed25519PrivateKey.generate()
        challenge = handshake.issue_challenge(IDENTITY_ID)
        response = answer(other, challenge, fingerprint=PrivateKeySigner(other).fingerprint)

        with pytest.raises(AuthFailed, match="Fingerprint"):
            await handshake.verify(IDENTITY_ID, response)

    async def test_bad_signature(self, handshake, identity_key):
        """Test a signature over the wrong data is rejected."""
        challenge = handshake.issue_challenge(IDENTITY_ID)
        signer = PrivateKeySigner(identity_key)
        response = AuthResponse(
            challenge_id=challenge.challenge_id,
            signature=base64.b64encode(signer.sign(b"something else")).decode("ascii"),
            fingerprint=signer.fingerprint,
        )

        with pytest.raises(AuthFailed, match="Signature verification failed"):
            await handshake.verify(IDENTITY_ID, response)

    async def test_challenge_single_use(self, handshake, identity_key):
        """Test a challenge cannot be answered twice."""
        challenge = handshake.issue_challenge(IDENTITY_ID)
        response = answer(identity_key, challenge)
        await handshake.verify(IDENTITY_ID, response)

        with pytest.raises(AuthFailed, match="already used"):
            await handshake.verify(IDENTITY_ID, response)

    async def test_challenge_expires(self, authorized_keys, identity_key):
        """Test an old challenge is rejected."""
        clock = FakeClock()
        handshake = AuthHandshake(authorized_keys, challenge_ttl=30, clock=clock)
        challenge = handshake.issue_challenge(IDENTITY_ID)
        clock.now += 31

        with pytest.raises(AuthFailed, match="expired"):
            await handshake.verify(IDENTITY_ID, answer(identity_key, challenge))

    async def test_challenge_bound_to_identity(self, handshake, identity_key):
        """Test a challenge issued to one identity cannot authenticate another."""
        challenge = handshake.issue_challenge("someone-else")

        with pytest.raises(AuthFailed):
            await handshake.verify(IDENTITY_ID, answer(identity_key, challenge))

    async def test_unknown_identity(self, handshake, identity_key):
        """Test an identity with no key on file is rejected."""
        challenge = handshake.issue_challenge("intruder")

        with pytest.raises(AuthFailed, match="not authorized"):
            await handshake.verify("intruder", answer(identity_key, challenge))


class TestTokens:
    """Tests for token renewal and revocation."""

    async def test_renew_replaces_token(self, handshake, identity_key):
        """Test renewal issues a new token and retires the old one."""
        challenge = handshake.issue_challenge(IDENTITY_ID)
        token = await handshake.verify(IDENTITY_ID, answer(identity_key, challenge))

        renewed = handshake.renew(token.token)

        assert renewed.token != token.token
        assert handshake.validate(token.token) is None
        assert handshake.validate(renewed.token) is renewed

    async def test_token_ttl_from_config(self, authorized_keys, identity_key):
        """Test the auth section of the YAML config sets the token lifetime."""
        config = config_from_dict({"auth": {"token_ttl": 600, "challenge_ttl": 10}})
        handshake = AuthHandshake.from_config(authorized_keys, config)
        challenge = handshake.issue_challenge(IDENTITY_ID)

        token = await handshake.verify(IDENTITY_ID, answer(identity_key, challenge))

        assert timedelta(seconds=590) < token.remaining() <= timedelta(seconds=600)

    def test_renew_unknown(self, handshake):
        """Test renewing an unknown token fails."""
        with pytest.raises(AuthFailed):
            handshake.renew("bogus")

    async def test_revoke(self, handshake, identity_key):
        """Test a revoked token no longer validates."""
        challenge = handshake.issue_challenge(IDENTITY_ID)
        token = await handshake.verify(IDENTITY_ID, answer(identity_key, challenge))

        handshake.revoke(token.token)

        assert handshake.validate(token.token) is None

    async def test_token_repr_hides_secret(self, handshake, identity_key):
        """Test the token value is not in repr."""
        challenge = handshake.issue_challenge(IDENTITY_ID)
        token = await handshake.verify(IDENTITY_ID, answer(identity_key, challenge))

        assert token.token not in repr(token)


class TestAuthorizedKeys:
    """Tests for AuthorizedKeys loading."""

    def test_from_lines(self, identity_key):
        """Test authorized_keys lines are parsed with the comment as identity."""
        openssh = identity_key.public_key().public_bytes(
            serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
        ).decode()
        lines = [
            "# pocket agent clients",
            "",
            f"{openssh} {IDENTITY_ID}",
            f"{openssh}",
            "ssh-ed25519 notbase64!! broken",
        ]

        keys = AuthorizedKeys.from_lines(lines)

        assert len(keys) == 1
        assert IDENTITY_ID in keys
        assert keys.get(IDENTITY_ID).fingerprint == fingerprint_public_key(
            identity_key.public_key()
        )

    def test_from_file(self, tmp_path, identity_key):
        """Test loading from a file."""
        openssh = identity_key.public_key().public_bytes(
            serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
        ).decode()
        path = tmp_path / "authorized_keys"
        path.write_text(f"{openssh} {IDENTITY_ID}\n")

        keys = AuthorizedKeys.from_file(path)

        assert [key.identity_id for key in keys] == [IDENTITY_ID]

    def test_fingerprint_format(self, identity_key):
        """Test fingerprints use the OpenSSH SHA256 form without padding."""
        fingerprint = fingerprint_public_key(identity_key.public_key())

        assert fingerprint.startswith("SHA256:")
        assert not fingerprint.endswith("=")
        assert len(fingerprint) == len("SHA256:") + 43


class TestAuthenticate:
    """Tests for the wire exchange in AuthHandshake.authenticate()."""

    async def test_success(self, handshake, key_store):
        """Test the exchange sends a challenge and auth_ok."""
        transport = FakeTransport(responder=auth_responder(key_store))

        token = await handshake.authenticate(transport, IDENTITY_ID, project_id="p1")

        types = [env.type for env in transport.envelopes()]
        assert types == ["auth_challenge", "auth_ok"]
        assert transport.envelopes()[1].body["token"] == token.token
        assert not transport.closed

    async def test_lost_auth_ok_revokes_token(self, handshake, key_store):
        """Test a token the client never received does not stay valid."""
        transport = LosesAuthOk(responder=auth_responder(key_store))

        with pytest.raises(TransportLost):
            await handshake.authenticate(transport, IDENTITY_ID, project_id="p1")

        (frame,) = transport.lost
        assert handshake.validate(decode_envelope(frame).body["token"]) is None

    async def test_rejection_closes(self, handshake):
        """Test a failed exchange reports AUTH_FAILED and closes with 4001."""
        stranger = FakeKeyStore({IDENTITY_ID: ed25519.Ed25519PrivateKey.generate()})
        transport = FakeTransport(responder=auth_responder(stranger))

        with pytest.raises(AuthFailed) as exc_info:
            await handshake.authenticate(transport, IDENTITY_ID, project_id="p1")

        assert exc_info.value.project_id == "p1"
        assert transport.of_type("error")[0].body["kind"] == "AUTH_FAILED"
        assert transport.close_code == 4001
        assert handshake.outstanding_challenges == 0

    async def test_timeout(self, authorized_keys):
        """Test a client that never answers times out."""
        handshake = AuthHandshake(authorized_keys, handshake_timeout=0.05)
        transport = FakeTransport()

        with pytest.raises(HandshakeTimeout):
            await handshake.authenticate(transport, IDENTITY_ID)

        assert transport.of_type("error")[0].body["kind"] == "HANDSHAKE_TIMEOUT"
        assert handshake.outstanding_challenges == 0

    async def test_wrong_frame(self, handshake):
        """Test anything but auth_response is rejected."""
        transport = FakeTransport()
        transport.feed('{"id":1,"type":"command","body":{"text":"ls"}}')

        with pytest.raises(AuthFailed, match="Expected auth_response"):
            await handshake.authenticate(transport, IDENTITY_ID)
