"""Tests for credential resolution and source construction."""
import httpx
import pytest

from sourcesync.config import Settings
from sourcesync.errors import ConfigurationError
from sourcesync.models.target import SyncTarget
from sourcesync.sources.gmail import GmailSource
from sourcesync.sources.registry import SourceFactory, resolve_credential
from sourcesync.sources.scrapbox import ScrapboxSource
from sourcesync.sync.retrying_client import RetryingClient


def _settings(**overrides) -> Settings:
    values = dict(scrapbox_cookie="", gmail_access_token="", gmail_query=None)
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _target(kind="scrapbox", *, private=False, credential=None) -> SyncTarget:
    return SyncTarget(
        id=1, name="t", kind=kind, source_id="proj",
        is_private=private, credential=credential,
    )


@pytest.fixture(name="http")
def http_fixture():
    return httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))


class TestResolveCredential:
    def test_public_uses_global(self):
        s = _settings(scrapbox_cookie="global")
        assert resolve_credential(_target(credential="own"), s) == "global"

    def test_private_prefers_own(self):
        s = _settings(scrapbox_cookie="global")
        assert resolve_credential(_target(private=True, credential="own"), s) == "own"

    def test_private_falls_back_to_global(self):
        s = _settings(scrapbox_cookie="global")
        assert resolve_credential(_target(private=True), s) == "global"

    def test_gmail_uses_access_token(self):
        s = _settings(gmail_access_token="tok")
        assert resolve_credential(_target("gmail"), s) == "tok"

    def test_nothing_configured(self):
        assert resolve_credential(_target(private=True), _settings()) is None


class TestSourceFactory:
    def test_builds_scrapbox_source(self, http):
        factory = SourceFactory(_settings(scrapbox_cookie="c"), RetryingClient(), http)
        source = factory(_target())
        assert isinstance(source, ScrapboxSource)
        assert source.project == "proj"

    def test_builds_gmail_source(self, http):
        factory = SourceFactory(_settings(gmail_access_token="tok"), RetryingClient(), http)
        assert isinstance(factory(_target("gmail")), GmailSource)

    def test_sources_share_client(self, http):
        client = RetryingClient()
        factory = SourceFactory(_settings(scrapbox_cookie="c"), client, http)
        assert factory(_target())._client is factory(_target())._client is client

    def test_missing_credentials(self, http):
        factory = SourceFactory(_settings(), RetryingClient(), http)
        with pytest.raises(ConfigurationError, match="No credentials"):
            factory(_target())

    def test_unsupported_kind(self, http):
        factory = SourceFactory(_settings(scrapbox_cookie="c"), RetryingClient(), http)
        with pytest.raises(ConfigurationError, match="Unsupported"):
            factory(_target("notion"))
