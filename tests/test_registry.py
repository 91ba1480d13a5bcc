import pytest

from rentcrawl.errors import ConfigurationError
from rentcrawl.sources import BaseSourceAdapter, SourceAdapter, SourceConfig, SourceRegistry, load_adapter

from .fakes import FakeAdapter

ADAPTER_MODULE = '''
from rentcrawl.models import NormalizedListing
from rentcrawl.sources import BaseSourceAdapter


class GammaAdapter(BaseSourceAdapter):
    source = "gamma"
    base_url = "https://gamma.example"

    def build_search_target(self, filters, page=1):
        return f"{self.base_url}/search?page={page}"

    async def extract_targets(self, unit):
        return []

    async def extract_detail(self, unit, url):
        return None

    def to_normalized_listing(self, detail):
        return NormalizedListing(source=self.source, external_id=detail.external_id, url=detail.url)
'''


def test_register_and_lookup():
    registry = SourceRegistry()
    registry.register(FakeAdapter("alpha"))
    registry.register(FakeAdapter("beta"), SourceConfig(enabled=False))

    assert "alpha" in registry
    assert registry.sources() == ["alpha", "beta"]
    assert registry.enabled_sources() == ["alpha"]
    assert registry.get_adapter("alpha").source == "alpha"
    assert isinstance(registry.get_adapter("alpha"), SourceAdapter)
    with pytest.raises(ConfigurationError, match="disabled"):
        registry.get_adapter("beta")
    with pytest.raises(ConfigurationError, match="Unknown source"):
        registry.get_adapter("zeta")

    registry.set_enabled("beta", True)
    assert registry.enabled_sources() == ["alpha", "beta"]
    assert registry.get_stats()["enabled_sources"] == 2


def test_request_delay_is_derived_from_hourly_rate():
    registry = SourceRegistry()
    registry.register(FakeAdapter("alpha"), SourceConfig(max_requests_per_hour=60))
    registry.register(FakeAdapter("beta"), SourceConfig(max_requests_per_hour=60, request_delay=1.5))

    assert registry.request_delay("alpha") == 60
    assert registry.request_delay("beta") == 1.5
    assert registry.request_delay("unknown") == 3.0


def test_update_config_validates_changes():
    registry = SourceRegistry()
    registry.register(FakeAdapter("alpha"))
    updated = registry.update_config("alpha", priority_weight=200)
    assert updated.priority_weight == 200
    assert registry.priority_weights() == {"alpha": 200}
    with pytest.raises(ConfigurationError):
        registry.get_config("zeta")


def test_load_config_file_updates_registered_sources(tmp_path):
    path = tmp_path / "sources.yaml"
    path.write_text(
        "alpha:\n"
        "  max_requests_per_hour: 120\n"
        "  search_filters:\n"
        "    city: hamburg\n"
        "unknown:\n"
        "  enabled: true\n",
        encoding="utf-8",
    )
    registry = SourceRegistry()
    registry.register(FakeAdapter("alpha"))

    loaded = registry.load_config_file(path)

    assert loaded == ["alpha"]
    assert registry.get_config("alpha").search_filters == {"city": "hamburg"}
    assert registry.request_delay("alpha") == 30
    assert "unknown" not in registry


def test_load_config_file_imports_adapters(tmp_path, monkeypatch):
    (tmp_path / "gamma_adapter.py").write_text(ADAPTER_MODULE, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    path = tmp_path / "sources.yaml"
    path.write_text("gamma:\n  adapter: gamma_adapter:GammaAdapter\n  priority_weight: 50\n", encoding="utf-8")

    registry = SourceRegistry()
    assert registry.load_config_file(path) == ["gamma"]
    assert isinstance(registry.get_adapter("gamma"), BaseSourceAdapter)
    assert registry.priority_weights() == {"gamma": 50}


def test_load_config_file_rejects_mismatched_adapter(tmp_path, monkeypatch):
    (tmp_path / "gamma_adapter.py").write_text(ADAPTER_MODULE, encoding="utf-8")
    monkeypatch.syspath_prepend(str(tmp_path))
    path = tmp_path / "sources.yaml"
    path.write_text("delta:\n  adapter: gamma_adapter:GammaAdapter\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="serves 'gamma'"):
        SourceRegistry().load_config_file(path)


@pytest.mark.parametrize(
    "content",
    [
        "alpha: [unclosed\n",
        "- just\n- a list\n",
        "alpha:\n  max_requests_per_hour: 0\n",
    ],
)
def test_load_config_file_rejects_bad_files(tmp_path, content):
    path = tmp_path / "sources.yaml"
    path.write_text(content, encoding="utf-8")
    registry = SourceRegistry()
    registry.register(FakeAdapter("alpha"))
    with pytest.raises(ConfigurationError):
        registry.load_config_file(path)


def test_load_config_file_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="Cannot read"):
        SourceRegistry().load_config_file(tmp_path / "missing.yaml")


@pytest.mark.parametrize("path", ["no_colon_here", "rentcrawl.sources:NoSuchAdapter", "not_a_module_xyz:Thing"])
def test_load_adapter_errors(path):
    with pytest.raises(ConfigurationError):
        load_adapter(path)


def test_validate_requires_credentials(monkeypatch):
    registry = SourceRegistry()
    registry.register(
        FakeAdapter("alpha"),
        SourceConfig(requires_auth=True, credentials_env=["ALPHA_USER", "ALPHA_PASSWORD"]),
    )
    registry.register(FakeAdapter("beta"), SourceConfig(requires_auth=True))
    registry.set_enabled("beta", False)

    monkeypatch.setenv("ALPHA_USER", "crawler")
    monkeypatch.delenv("ALPHA_PASSWORD", raising=False)
    with pytest.raises(ConfigurationError, match="ALPHA_PASSWORD"):
        registry.validate()

    monkeypatch.setenv("ALPHA_PASSWORD", "secret")
    registry.validate()
    assert registry.credentials("alpha") == {"ALPHA_USER": "crawler", "ALPHA_PASSWORD": "secret"}

    registry.set_enabled("beta", True)
    with pytest.raises(ConfigurationError, match="names no credentials_env"):
        registry.validate()


@pytest.mark.parametrize(
    "text, expected",
    [
        ("1.250,50 €", 1250.5),
        ("890 €", 890.0),
        ("€ 1.100", 1100.0),
        ("on request", None),
        (None, None),
    ],
)
def test_normalize_price(text, expected):
    assert BaseSourceAdapter.normalize_price(text) == expected


def test_normalize_size_and_rooms():
    assert BaseSourceAdapter.normalize_size("45,5 m²") == 45.5
    assert BaseSourceAdapter.normalize_size("ca. 60 qm") == 60.0
    assert BaseSourceAdapter.normalize_size("") is None
    assert BaseSourceAdapter.normalize_rooms("2,5 Zimmer") == 2.5
    assert BaseSourceAdapter.normalize_rooms("3 rooms") == 3.0
    assert BaseSourceAdapter.normalize_rooms("studio") is None


def test_extract_image_urls():
    adapter = FakeAdapter("alpha")
    urls = adapter.extract_image_urls([
        "//cdn.alpha.example/1.jpg",
        "/img/2.jpg",
        "https://cdn.alpha.example/3.jpg",
        "https://cdn.alpha.example/placeholder.png",
        None,
        "",
    ])
    assert urls == [
        "https://cdn.alpha.example/1.jpg",
        "https://alpha.example/img/2.jpg",
        "https://cdn.alpha.example/3.jpg",
    ]
