"""
Tests for TOTP generation.

Reference vectors are the SHA-1 rows of RFC 6238 Appendix B, truncated to
six digits.
"""

import pytest

from webtestkit.auth.totp import (
    generate_totp_code,
    seconds_until_next_window,
    totp_code_for_secret,
    verify_totp_code,
    wait_for_fresh_window,
)
from webtestkit.errors import ConfigurationError

from conftest import RFC_SECRET


# ====================================================================
# 1. Code generation
# ====================================================================

class TestCodes:

    @pytest.mark.parametrize("for_time, expected", [
        (59, "287082"),
        (1111111109, "081804"),
        (1111111111, "050471"),
        (1234567890, "005924"),
        (2000000000, "279037"),
    ])
    def test_rfc6238_vectors(self, for_time, expected):
        assert totp_code_for_secret(RFC_SECRET, for_time) == expected

    def test_secret_is_normalised(self):
        messy = "gezd gnbv gy3t qojq gezd gnbv gy3t qojq"
        assert totp_code_for_secret(messy, 59) == "287082"

    def test_from_env(self):
        env = {"MY_TOTP": RFC_SECRET}
        assert generate_totp_code("MY_TOTP", env, for_time=1234567890) == "005924"

    def test_same_window_same_code(self):
        env = {"MY_TOTP": RFC_SECRET}
        assert generate_totp_code("MY_TOTP", env, 60) == generate_totp_code("MY_TOTP", env, 89)
        assert generate_totp_code("MY_TOTP", env, 89) != generate_totp_code("MY_TOTP", env, 90)

    def test_missing_secret_is_configuration_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            generate_totp_code("MY_TOTP", {})
        assert exc_info.value.field == "MY_TOTP"
        assert "MY_TOTP" in exc_info.value.remediation

    def test_invalid_base32_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="base32") as exc_info:
            generate_totp_code("MY_TOTP", {"MY_TOTP": "not-base32!!"})
        assert exc_info.value.field == "MY_TOTP"

    def test_verify(self):
        env = {"MY_TOTP": RFC_SECRET}
        assert verify_totp_code("287082", "MY_TOTP", env, for_time=59)
        assert not verify_totp_code("000000", "MY_TOTP", env, for_time=59)
        assert not verify_totp_code("287082", "UNSET", env, for_time=59)


# ====================================================================
# 2. Window timing
# ====================================================================

class TestWindow:

    def test_seconds_until_next_window(self):
        assert seconds_until_next_window(59) == 1
        assert seconds_until_next_window(60) == 30
        assert seconds_until_next_window(75) == 15

    async def test_waits_when_window_nearly_over(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        waited = await wait_for_fresh_window(5, clock=lambda: 1111111109, sleep=fake_sleep)
        assert waited is True
        assert sleeps == [2]

    async def test_no_wait_with_time_to_spare(self):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        waited = await wait_for_fresh_window(5, clock=lambda: 1111111111, sleep=fake_sleep)
        assert waited is False
        assert sleeps == []
