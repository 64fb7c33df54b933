"""Tests for the HS256 token codec."""

import json
from dataclasses import replace
from datetime import timedelta

import pytest

from campusauth.config import Settings
from campusauth.service.tokens import (
    ClaimSet,
    InvalidSignatureError,
    MalformedTokenError,
    TokenCodec,
    TokenError,
    TokenExpiredError,
    TokenType,
)
from campusauth.storage.models import Role


@pytest.fixture
def claims():
    return ClaimSet(sub="u-1", username="alice", role=Role.STUDENT, device="phoneA")


def _swap_payload(codec, token, **changes):
    header, payload, sig = token.split(".")
    data = json.loads(codec._decode_segment(payload))
    data.update(changes)
    forged = codec._encode_segment(json.dumps(data, separators=(",", ":")).encode())
    return f"{header}.{forged}.{sig}"


class TestSignAndVerify:
    def test_identity_claims_round_trip(self, codec, claims):
        verified = codec.verify(codec.sign(claims, timedelta(minutes=5)))

        assert verified.sub == "u-1"
        assert verified.username == "alice"
        assert verified.role is Role.STUDENT
        assert verified.device == "phoneA"
        assert verified.token_type is TokenType.ACCESS

    def test_exp_is_iat_plus_ttl(self, codec, claims, clock):
        verified = codec.verify(codec.sign(claims, timedelta(minutes=5)))

        assert verified.iat == int(clock().timestamp())
        assert verified.exp - verified.iat == 300

    def test_tokens_signed_in_same_instant_differ(self, codec, claims):
        first = codec.sign(claims, timedelta(minutes=5))
        second = codec.sign(claims, timedelta(minutes=5))

        assert first != second

    def test_device_claim_is_optional(self, codec):
        token = codec.sign(ClaimSet(sub="u-2", username="bob", role=Role.USER), timedelta(minutes=1))

        assert codec.verify(token).device is None

    def test_refresh_type_survives(self, codec, claims):
        token = codec.sign(replace(claims, token_type=TokenType.REFRESH), timedelta(hours=1))

        assert codec.verify(token).token_type is TokenType.REFRESH


class TestVerificationFailures:
    def test_tampered_payload_is_invalid_signature(self, codec, claims):
        token = codec.sign(claims, timedelta(minutes=5))
        forged = _swap_payload(codec, token, role="admin")

        with pytest.raises(InvalidSignatureError):
            codec.verify(forged)

    def test_other_secret_is_invalid_signature(self, codec, claims, clock):
        other = TokenCodec(Settings(jwt_secret="x" * 40), clock=clock)
        token = other.sign(claims, timedelta(minutes=5))

        with pytest.raises(InvalidSignatureError):
            codec.verify(token)

    @pytest.mark.parametrize("token", ["", "garbage", "a.b", "a.b.c.d", "!!!.???.***"])
    def test_structurally_broken_tokens_are_malformed(self, codec, token):
        with pytest.raises(MalformedTokenError):
            codec.verify(token)

    def test_non_ascii_signature_is_malformed(self, codec, claims):
        token = codec.sign(claims, timedelta(minutes=5))

        with pytest.raises(MalformedTokenError):
            codec.verify(token[:-1] + "\u00e9")

    def test_alg_none_is_rejected(self, codec, claims):
        token = codec.sign(claims, timedelta(minutes=5))
        _, payload, _ = token.split(".")
        header = codec._encode_segment(b'{"alg":"none","typ":"JWT"}')

        with pytest.raises(MalformedTokenError):
            codec.verify(f"{header}.{payload}.")

    def test_foreign_issuer_is_malformed(self, settings, codec, claims, clock):
        foreign = TokenCodec(
            Settings(jwt_secret=settings.jwt_secret, jwt_issuer="elsewhere"), clock=clock
        )
        token = foreign.sign(claims, timedelta(minutes=5))

        with pytest.raises(MalformedTokenError):
            codec.verify(token)

    def test_expired_token(self, codec, claims, clock):
        token = codec.sign(claims, timedelta(minutes=5))
        clock.advance(minutes=5)

        with pytest.raises(TokenExpiredError):
            codec.verify(token)

    def test_leeway_tolerates_small_skew(self, claims, clock):
        lenient = TokenCodec(
            Settings(jwt_secret="y" * 40, token_leeway_seconds=30), clock=clock
        )
        token = lenient.sign(claims, timedelta(minutes=5))
        clock.advance(minutes=5, seconds=10)

        assert lenient.verify(token).sub == "u-1"

        clock.advance(seconds=30)
        with pytest.raises(TokenExpiredError):
            lenient.verify(token)

    def test_failure_kinds_share_base(self):
        for exc_type in (MalformedTokenError, InvalidSignatureError, TokenExpiredError):
            assert issubclass(exc_type, TokenError)

    def test_unknown_role_claim_is_malformed(self, codec):
        # Signed by us, but carrying a role outside the closed set
        token = codec.sign(ClaimSet(sub="u-3", username="eve", role=Role.USER), timedelta(minutes=5))
        header, payload, _ = token.split(".")
        data = json.loads(codec._decode_segment(payload))
        data["role"] = "superuser"
        payload = codec._encode_segment(json.dumps(data, separators=(",", ":")).encode())
        resigned = f"{header}.{payload}.{codec._signature(f'{header}.{payload}')}"

        with pytest.raises(MalformedTokenError):
            codec.verify(resigned)
