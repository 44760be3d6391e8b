"""
Unit tests for sealing and opening OAuth flow state.
"""

import time

import pytest
from cryptography.fernet import Fernet

from social.graze.bookshelf.atproto.state import FlowState, StateCodec
from social.graze.bookshelf.errors import InvalidState, StateExpired


def make_state(timestamp: int, destination=None) -> FlowState:
    return FlowState(
        code_verifier="v" * 86,
        handle="alice.example.com",
        did="did:plc:alice",
        pds_url="https://pds.example.com",
        authorization_endpoint="https://auth.example.com/oauth/authorize",
        token_endpoint="https://auth.example.com/oauth/token",
        issuer="https://auth.example.com",
        destination=destination,
        timestamp=timestamp,
    )


@pytest.fixture
def codec() -> StateCodec:
    return StateCodec(Fernet(Fernet.generate_key()))


class TestStateCodec:
    def test_round_trip(self, codec):
        """Decoding an encoded state yields the same state."""
        now = int(time.time())
        state = make_state(now, destination="https://app.example.com/")
        assert codec.decode(codec.encode(state), now=now + 10) == state

    def test_encoded_state_is_url_safe(self, codec):
        encoded = codec.encode(make_state(int(time.time())))
        assert all(c.isalnum() or c in "-_=" for c in encoded)

    def test_encoded_state_hides_verifier(self, codec):
        encoded = codec.encode(make_state(int(time.time())))
        assert "v" * 20 not in encoded

    def test_just_inside_max_age_is_valid(self, codec):
        """A state 4:59 old is still accepted."""
        state = make_state(1_000_000)
        assert codec.decode(codec.encode(state), now=1_000_000 + 299) == state

    def test_exactly_max_age_is_expired(self, codec):
        """A state exactly 5:00 old is rejected."""
        state = make_state(1_000_000)
        with pytest.raises(StateExpired):
            codec.decode(codec.encode(state), now=1_000_000 + 300)

    def test_old_state_is_expired(self, codec):
        state = make_state(1_000_000)
        with pytest.raises(StateExpired):
            codec.decode(codec.encode(state), now=1_000_000 + 3600)

    def test_tampered_state_is_invalid(self, codec):
        encoded = codec.encode(make_state(int(time.time())))
        tampered = encoded[:-6] + ("A" if encoded[-6] != "A" else "B") + encoded[-5:]
        with pytest.raises(InvalidState):
            codec.decode(tampered)

    def test_state_from_another_key_is_invalid(self, codec):
        other = StateCodec(Fernet(Fernet.generate_key()))
        encoded = other.encode(make_state(int(time.time())))
        with pytest.raises(InvalidState):
            codec.decode(encoded)

    def test_garbage_is_invalid(self, codec):
        with pytest.raises(InvalidState):
            codec.decode("not-a-state")

    def test_empty_is_invalid(self, codec):
        with pytest.raises(InvalidState):
            codec.decode("")

    def test_sealed_non_state_payload_is_invalid(self):
        fernet = Fernet(Fernet.generate_key())
        codec = StateCodec(fernet)
        encoded = fernet.encrypt(b'{"handle": "alice"}').decode("ascii")
        with pytest.raises(InvalidState):
            codec.decode(encoded)
