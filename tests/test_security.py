"""Tests for webhook signatures and write rate limiting."""

import pytest

from livepreview.errors import SecurityError
from livepreview.security import RateLimiter, compute_signature, verify_webhook_signature

BODY = b'{"ref":"refs/heads/main"}'


def test_signature_format():
    signature = compute_signature("s3cret", BODY)
    assert signature.startswith("sha256=")
    assert len(signature) == len("sha256=") + 64


@pytest.mark.parametrize(
    "secret,signature,accepted",
    [
        ("s3cret", compute_signature("s3cret", BODY), True),
        ("s3cret", compute_signature("other", BODY), False),
        ("s3cret", compute_signature("s3cret", BODY)[:-1], False),
        ("s3cret", "sha1=abc", False),
        ("s3cret", None, False),
        ("s3cret", "", False),
        ("", None, True),
        (None, "sha256=whatever", True),
    ],
)
def test_signature_matrix(secret, signature, accepted):
    if accepted:
        verify_webhook_signature(secret, BODY, signature)
    else:
        with pytest.raises(SecurityError):
            verify_webhook_signature(secret, BODY, signature)


def test_signature_covers_the_exact_body():
    signature = compute_signature("s3cret", BODY)
    with pytest.raises(SecurityError):
        verify_webhook_signature("s3cret", BODY + b" ", signature)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_rate_limiter_allows_burst_then_blocks():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=3, clock=clock)
    assert [limiter.consume("ip") for _ in range(4)] == [True, True, True, False]
    assert limiter.get_wait_time("ip") == pytest.approx(20.0)


def test_rate_limiter_refills_over_time():
    clock = FakeClock()
    limiter = RateLimiter(requests_per_minute=60, burst_size=1, clock=clock)
    assert limiter.consume("ip") is True
    assert limiter.consume("ip") is False
    clock.now += 1.0
    assert limiter.consume("ip") is True


def test_rate_limiter_keys_are_independent():
    limiter = RateLimiter(requests_per_minute=1, clock=FakeClock())
    assert limiter.consume("/start:1.2.3.4") is True
    assert limiter.consume("/start:1.2.3.4") is False
    assert limiter.consume("/stop:1.2.3.4") is True
