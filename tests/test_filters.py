import pytest

from crawler.exceptions import CrawlConfigError
from crawler.filters import InclusionExclusionFilter
from models import FilterRule


def test_no_rules_allows_everything():
    assert InclusionExclusionFilter().is_url_allowed("https://example.com/a")


def test_inclusion_requires_a_match():
    url_filter = InclusionExclusionFilter.from_patterns(inclusion=["/blog"])
    assert url_filter.is_url_allowed("https://example.com/blog/post")
    assert not url_filter.is_url_allowed("https://example.com/shop")


def test_exclusion_wins_over_inclusion():
    url_filter = InclusionExclusionFilter.from_patterns(inclusion=["/blog"], exclusion=["draft"])
    assert not url_filter.is_url_allowed("https://example.com/blog/draft-1")


def test_regex_rules():
    url_filter = InclusionExclusionFilter(exclusion=[FilterRule(pattern=r"\?page=\d+$", is_regex=True)])
    assert not url_filter.is_url_allowed("https://example.com/list?page=2")
    assert url_filter.is_url_allowed("https://example.com/list?page=all")


def test_invalid_regex_raises_config_error():
    url_filter = InclusionExclusionFilter()
    with pytest.raises(CrawlConfigError):
        url_filter.add_exclusion_rule("([", is_regex=True)
    with pytest.raises(ValueError):
        InclusionExclusionFilter(inclusion=[FilterRule(pattern="*bad", is_regex=True)])


def test_runtime_edits_and_snapshots():
    url_filter = InclusionExclusionFilter()
    url_filter.add_exclusion_rule("/tmp")
    url_filter.add_inclusion_rule(r"^https://example\.com", is_regex=True)
    snapshot = url_filter.exclusion_rules()

    assert not url_filter.is_url_allowed("https://example.com/tmp/x")
    url_filter.remove_exclusion_rule("/tmp")
    assert url_filter.is_url_allowed("https://example.com/tmp/x")
    assert snapshot == [FilterRule(pattern="/tmp")]
    assert url_filter.inclusion_rules() == [FilterRule(pattern=r"^https://example\.com", is_regex=True)]

    url_filter.remove_inclusion_rule(r"^https://example\.com")
    assert url_filter.is_url_allowed("https://other.example/")
