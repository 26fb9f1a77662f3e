"""Tests for shared validation helpers"""

import pytest

from tradie_api.shared.validators import (
    append_query_param,
    is_safe_relative_redirect,
    validate_iso_date,
    validate_uuid,
)


@pytest.mark.parametrize(
    "url,expected",
    [
        ("/dashboard", "/dashboard?success=connected"),
        ("/dashboard?tab=tc", "/dashboard?tab=tc&success=connected"),
        ("/jobs#tab", "/jobs?success=connected#tab"),
        ("/jobs?view=list#tab", "/jobs?view=list&success=connected#tab"),
        ("/jobs#section?x=1", "/jobs?success=connected#section?x=1"),
    ],
)
def test_append_query_param(url, expected):
    assert append_query_param(url, "success", "connected") == expected


@pytest.mark.parametrize(
    "url,safe",
    [
        ("/dashboard/integrations", True),
        ("/jobs?id=1#top", True),
        (None, False),
        ("", False),
        ("dashboard", False),
        ("//evil.example", False),
        ("/\\evil.example", False),
        ("https://evil.example/", False),
        ("/redirect?to=https://evil.example", False),
    ],
)
def test_is_safe_relative_redirect(url, safe):
    assert is_safe_relative_redirect(url) is safe


def test_validate_uuid():
    assert validate_uuid("6f1c1b4e-5d0a-4c55-9b0e-0d2c6a0f9e11") is True
    assert validate_uuid("not-a-uuid") is False
    assert validate_uuid(None) is False


def test_validate_iso_date():
    assert validate_iso_date("2025-03-03") == "2025-03-03"
    assert validate_iso_date(None) is None
    with pytest.raises(ValueError):
        validate_iso_date("03/03/2025")
