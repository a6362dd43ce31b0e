"""Client identity extraction."""

from __future__ import annotations

from sessionwatch.identity import UNKNOWN_CLIENT, extract_client_ip


def test_custom_header_wins_over_proxy_headers() -> None:
    headers = {"X-Visitor-Ip": "10.9.9.9", "X-Forwarded-For": "1.1.1.1"}
    assert extract_client_ip(headers, "127.0.0.1", custom_header="x-visitor-ip") == "10.9.9.9"


def test_proxy_header_precedence() -> None:
    headers = {
        "x-real-ip": "3.3.3.3",
        "cf-connecting-ip": "2.2.2.2",
        "x-forwarded-for": "1.1.1.1, 10.0.0.1",
    }
    # Returned verbatim: forwarded-for lists are not split.
    assert extract_client_ip(headers, "127.0.0.1") == "1.1.1.1, 10.0.0.1"


def test_empty_header_values_are_skipped() -> None:
    headers = {"x-client-ip": "  ", "true-client-ip": "4.4.4.4"}
    assert extract_client_ip(headers, "127.0.0.1") == "4.4.4.4"


def test_peer_address_when_no_headers() -> None:
    assert extract_client_ip({}, "192.168.1.20") == "192.168.1.20"


def test_unconfigured_custom_header_falls_through() -> None:
    assert extract_client_ip({"x-real-ip": "5.5.5.5"}, None, custom_header="x-missing") == "5.5.5.5"


def test_platform_source_ip_is_last_resort() -> None:
    scope = {"aws.event": {"requestContext": {"identity": {"sourceIp": "8.8.4.4"}}}}
    assert extract_client_ip({}, None, scope=scope) == "8.8.4.4"
    assert extract_client_ip({}, "9.9.9.9", scope=scope) == "9.9.9.9"


def test_unresolved_identity_is_empty_string() -> None:
    assert extract_client_ip({}, None) == UNKNOWN_CLIENT == ""
    assert extract_client_ip({}, None, scope={"aws.event": {"requestContext": {}}}) == ""


def test_ipv6_is_not_normalized() -> None:
    assert extract_client_ip({}, "::FFFF:10.0.0.1") == "::FFFF:10.0.0.1"
