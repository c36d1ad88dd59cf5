import base64

import pytest

from intake.errors import ConfigurationError
from intake.tokens import TokenIssuer

from conftest import TEST_SECRET


class FakeClock:
    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(clock):
    return TokenIssuer(TEST_SECRET, clock=clock)


def _decode(token: str) -> str:
    return base64.urlsafe_b64decode(token + "=" * (-len(token) % 4)).decode()


def _encode(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def test_round_trip(issuer):
    token = issuer.generate(42)
    assert issuer.validate(token) == 42


def test_token_is_url_safe(issuer):
    token = issuer.generate(987654321, 3600)
    assert all(c.isalnum() or c in "-_" for c in token)


def test_token_layout(issuer, clock):
    subject, issued, lifetime, mac = _decode(issuer.generate(7, 600)).split(":")
    assert (subject, issued, lifetime) == ("7", str(int(clock.now)), "600")
    assert len(mac) == 64


def test_default_lifetime_is_used(issuer, clock):
    token = issuer.generate(1)
    clock.now += 1799
    assert issuer.validate(token) == 1
    clock.now += 1
    assert issuer.validate(token) is None


def test_zero_lifetime_is_immediately_expired(issuer):
    assert issuer.validate(issuer.generate(1, 0)) is None


def test_token_is_reusable_until_expiry(issuer):
    token = issuer.generate(5, 60)
    assert issuer.validate(token) == 5
    assert issuer.validate(token) == 5


def test_other_secret_rejects(issuer, clock):
    other = TokenIssuer("x" * 40, clock=clock)
    assert other.validate(issuer.generate(1)) is None


def test_tampered_subject_rejected(issuer):
    subject, issued, lifetime, mac = _decode(issuer.generate(1, 600)).split(":")
    assert issuer.validate(_encode(f"2:{issued}:{lifetime}:{mac}")) is None


def test_extended_lifetime_rejected(issuer):
    subject, issued, lifetime, mac = _decode(issuer.generate(1, 600)).split(":")
    assert issuer.validate(_encode(f"{subject}:{issued}:999999:{mac}")) is None


def test_mutated_mac_rejected(issuer):
    subject, issued, lifetime, mac = _decode(issuer.generate(1, 600)).split(":")
    flipped = ("0" if mac[0] != "0" else "1") + mac[1:]
    assert issuer.validate(_encode(f"{subject}:{issued}:{lifetime}:{flipped}")) is None


@pytest.mark.parametrize(
    "token",
    [
        None,
        "",
        "not a token",
        "!!!!",
        "abc",
        _encode("1:2:3"),
        _encode("1:2:3:4:5"),
        _encode("a:b:c:d"),
        _encode("-1:2:3:abc"),
        _encode("9" * 5000 + ":1:1:" + "0" * 64),
        _encode("1:" + "9" * 5000 + ":1:" + "0" * 64),
        "åäö",
    ],
)
def test_malformed_tokens_rejected(issuer, token):
    assert issuer.validate(token) is None


def test_padded_token_still_accepted(issuer):
    token = issuer.generate(3, 600)
    padded = token + "=" * (-len(token) % 4)
    assert issuer.validate(padded) == 3


@pytest.mark.parametrize("secret", [None, "", "short", "x" * 31])
def test_missing_or_short_secret_is_configuration_error(secret):
    with pytest.raises(ConfigurationError):
        TokenIssuer(secret)


def test_negative_values_rejected(issuer):
    with pytest.raises(ValueError):
        issuer.generate(-1)
    with pytest.raises(ValueError):
        issuer.generate(1, -5)
