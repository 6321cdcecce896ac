import pytest

from config import DedupPolicy, FetchConfig, apply_overrides, config
from errors import ValidationError


def test_defaults_match_documented_policy():
    fetch_config = FetchConfig()
    assert fetch_config.max_items == 50
    assert fetch_config.timeout == 30.0
    assert fetch_config.retry_count == 3
    assert fetch_config.headers == {}
    assert fetch_config.deduplication == DedupPolicy(enabled=True, field="guid")
    assert "RSS-Reader" in fetch_config.user_agent


def test_none_returns_independent_copy():
    base = FetchConfig(headers={"X-Test": "1"})
    merged = apply_overrides(base, None)
    assert merged == base
    merged.headers["X-Other"] = "2"
    assert base.headers == {"X-Test": "1"}


def test_mapping_merges_with_camel_case_aliases():
    merged = apply_overrides(FetchConfig(), {
        "maxItems": "10",
        "retryCount": 0,
        "timeout": 5,
        "headers": {"Accept": "application/rss+xml"},
        "deduplication": {"field": "link"},
        "userAgent": None,
    })
    assert merged.max_items == 10
    assert merged.retry_count == 0
    assert merged.timeout == 5.0
    assert merged.headers == {"Accept": "application/rss+xml"}
    assert merged.deduplication == DedupPolicy(enabled=True, field="link")
    assert merged.user_agent == FetchConfig().user_agent


def test_fetch_config_override_replaces_base():
    override = FetchConfig(max_items=3, cron_schedule="*/5 * * * *")
    merged = apply_overrides(FetchConfig(max_items=40, retry_count=9), override)
    assert merged == override


def test_blank_cron_becomes_none():
    assert apply_overrides(FetchConfig(), {"cron_schedule": "   "}).cron_schedule is None
    assert apply_overrides(FetchConfig(), {"cronSchedule": " 0 * * * * "}).cron_schedule == "0 * * * *"


@pytest.mark.parametrize("overrides", [
    {"bogus": 1},
    {"max_items": 0},
    {"timeout": -1},
    {"retry_count": -2},
    {"max_items": "many"},
    {"headers": ["not", "a", "mapping"]},
    {"deduplication": {"field": "author"}},
    {"deduplication": {"enabled": True, "strict": True}},
    {"deduplication": "guid"},
])
def test_invalid_overrides_raise(overrides):
    with pytest.raises(ValidationError):
        apply_overrides(FetchConfig(), overrides)


def test_default_fetch_config_uses_process_settings(monkeypatch):
    monkeypatch.setattr(config, "MAX_ITEMS_PER_FETCH", 7)
    monkeypatch.setattr(config, "HTTP_TIMEOUT", 12)
    monkeypatch.setattr(config, "MAX_RETRIES", 1)
    fetch_config = config.default_fetch_config()
    assert (fetch_config.max_items, fetch_config.timeout, fetch_config.retry_count) == (7, 12.0, 1)


def test_load_subscription_sources(tmp_path):
    path = tmp_path / "subscriptions.yaml"
    path.write_text(
        "subscriptions:\n"
        "  jane:\n"
        "    url: https://nitter.net/jane/rss\n"
        "    cron_schedule: '*/10 * * * *'\n"
        "  broken: just-a-string\n"
        "  nourl:\n"
        "    type: nitter_rss\n"
    )
    sources = config.load_subscription_sources(str(path))
    assert sources == [{"name": "jane", "url": "https://nitter.net/jane/rss", "cron_schedule": "*/10 * * * *"}]
