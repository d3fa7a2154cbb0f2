from config import config
from proxy import build_proxy_url, encode_component

TARGET = "https://www.example.com/rss/f1/news/?a=1&b=2"


def test_query_opener_appends_encoded_target():
    url = build_proxy_url(TARGET, "https://proxy.test/?url=")

    assert url == "https://proxy.test/?url=https%3A%2F%2Fwww.example.com%2Frss%2Ff1%2Fnews%2F%3Fa%3D1%26b%3D2"


def test_raw_passthrough_base_appends_encoded_target():
    url = build_proxy_url("https://a.test/feed", "https://allorigins.test/raw?url=")

    assert url == "https://allorigins.test/raw?url=https%3A%2F%2Fa.test%2Ffeed"


def test_path_style_base_appends_target_verbatim():
    url = build_proxy_url(TARGET, "https://cors.test/")

    assert url == "https://cors.test/" + TARGET


def test_other_base_gets_url_parameter():
    assert build_proxy_url("https://a.test/x", "https://proxy.test/fetch") == \
        "https://proxy.test/fetch?url=https%3A%2F%2Fa.test%2Fx"


def test_base_with_existing_query_uses_ampersand():
    assert build_proxy_url("https://a.test/x", "https://proxy.test/fetch?key=k") == \
        "https://proxy.test/fetch?key=k&url=https%3A%2F%2Fa.test%2Fx"


def test_empty_base_falls_back_to_configured_default(monkeypatch):
    monkeypatch.setattr(config, "PROXY_BASE", "https://default.test/?url=")

    assert build_proxy_url("https://a.test/x", "") == "https://default.test/?url=https%3A%2F%2Fa.test%2Fx"


def test_encode_component_leaves_unreserved_marks():
    assert encode_component("a b!~*'()-_.") == "a%20b!~*'()-_."
    assert encode_component("é") == "%C3%A9"


def test_malformed_base_still_returns_string():
    url = build_proxy_url("https://a.test/x", "not a url")

    assert isinstance(url, str)
    assert url.endswith("url=https%3A%2F%2Fa.test%2Fx")
