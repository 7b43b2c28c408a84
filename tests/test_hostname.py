"""Tests for global hostname allocation."""

import re

import pytest

from glbc.errors import ConfigError
from glbc.hostname import allocate, new_id

ID_PATTERN = re.compile(r"^[0-9a-v]{20}$")


class TestNewId:
    """Tests for new_id()."""

    def test_format(self):
        assert ID_PATTERN.match(new_id())

    def test_unique(self):
        ids = {new_id() for _ in range(1000)}
        assert len(ids) == 1000

    def test_sortable_by_time(self):
        earlier = new_id(now=1_600_000_000)
        later = new_id(now=1_700_000_000)
        assert earlier < later

    def test_same_second_ordered_by_counter(self):
        first = new_id(now=1_700_000_000)
        second = new_id(now=1_700_000_000)
        assert first[:6] == second[:6]
        assert first != second


class TestAllocate:
    """Tests for allocate()."""

    def test_existing_returned_unchanged(self):
        assert allocate("abc.example.com", "other.org") == "abc.example.com"

    def test_new_hostname(self):
        hostname = allocate("", "example.com")
        label, domain = hostname.split(".", 1)

        assert domain == "example.com"
        assert ID_PATTERN.match(label)

    def test_none_existing(self):
        assert allocate(None, "example.com").endswith(".example.com")

    def test_domain_normalized(self):
        assert allocate(None, "Example.com.").endswith(".example.com")

    @pytest.mark.parametrize("domain", ["", "   ", "bad_domain.com", "a..b"])
    def test_invalid_domain(self, domain):
        with pytest.raises(ConfigError):
            allocate(None, domain)
