import pytest

from munin_node import AccessDenied, AccessGuard, is_allowed


def test_is_allowed_matches_subnet_pattern():
    assert is_allowed("192.168.1.5", [r"^192\.168\.1\..*$"])
    assert not is_allowed("10.0.0.9", [r"^192\.168\.1\..*$"])


def test_is_allowed_empty_list_denies_everything():
    assert not is_allowed("127.0.0.1", [])
    assert not is_allowed("", [])


def test_is_allowed_is_unanchored():
    assert is_allowed("10.1.2.3", [r"1\.2"])


def test_is_allowed_any_pattern_accepts():
    patterns = [r"^10\.", r"^127\.0\.0\.1$"]
    assert is_allowed("127.0.0.1", patterns)
    assert is_allowed("10.9.9.9", patterns)
    assert not is_allowed("172.16.0.1", patterns)


def test_is_allowed_skips_malformed_pattern(logger):
    assert is_allowed("10.0.0.1", ["(", r"^10\."], logger)
    assert not is_allowed("10.0.0.1", ["("], logger)


def test_guard_drops_invalid_patterns(logger):
    guard = AccessGuard(["[unclosed", r"^127\."], logger)
    assert guard.is_allowed("127.0.0.1")
    assert not guard.is_allowed("192.168.0.1")


def test_guard_with_no_patterns_denies(logger):
    guard = AccessGuard([], logger)
    assert not guard.is_allowed("127.0.0.1")


def test_guard_check_raises_access_denied(logger):
    guard = AccessGuard([r"^127\."], logger)
    guard.check("127.0.0.1")
    with pytest.raises(AccessDenied):
        guard.check("10.0.0.1")


@pytest.mark.parametrize(
    "peername, expected",
    [
        (("127.0.0.1", 51234), "127.0.0.1"),
        (("::1", 51234, 0, 0), "::1"),
        (("::ffff:192.168.1.5", 51234, 0, 0), "192.168.1.5"),
        (None, ""),
    ],
)
def test_client_address_strips_port(peername, expected):
    assert AccessGuard.client_address(peername) == expected
