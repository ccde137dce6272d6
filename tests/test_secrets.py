"""Unit tests for secret stores."""

import pytest

from actionci.errors import SecretNotFoundError
from actionci.model import EnvironmentConfig
from actionci.secrets import ChainSecretStore, EnvSecretStore, MappingSecretStore, snapshot


@pytest.fixture
def mapping_store():
    return MappingSecretStore(
        {"prod": EnvironmentConfig(name="prod", secrets={"TOKEN": "prod-token"})},
        repository={"TOKEN": "repo-token", "SHARED": "shared"},
    )


class TestMappingSecretStore:
    def test_environment_scope_wins(self, mapping_store):
        assert mapping_store.resolve("prod", "TOKEN") == "prod-token"

    def test_repository_fallback(self, mapping_store):
        assert mapping_store.resolve("prod", "SHARED") == "shared"
        assert mapping_store.resolve(None, "TOKEN") == "repo-token"

    def test_missing(self, mapping_store):
        with pytest.raises(SecretNotFoundError, match="'NOPE' not found in environment 'prod'"):
            mapping_store.resolve("prod", "NOPE")


class TestEnvSecretStore:
    def test_scoped_and_repository_variables(self):
        store = EnvSecretStore(environ={"ACTIONCI_SECRET_PROD_TOKEN": "a", "ACTIONCI_SECRET_TOKEN": "b"})
        assert store.resolve("prod", "TOKEN") == "a"
        assert store.resolve("staging", "TOKEN") == "b"
        assert store.resolve(None, "TOKEN") == "b"

    def test_missing(self):
        with pytest.raises(SecretNotFoundError):
            EnvSecretStore(environ={}).resolve(None, "TOKEN")


def test_chain_first_hit_wins(mapping_store):
    chain = ChainSecretStore(EnvSecretStore(environ={"ACTIONCI_SECRET_EXTRA": "x"}), mapping_store)
    assert chain.resolve("prod", "EXTRA") == "x"
    assert chain.resolve("prod", "TOKEN") == "prod-token"
    with pytest.raises(SecretNotFoundError):
        chain.resolve("prod", "NOPE")


def test_snapshot_resolves_requested_names_only(mapping_store):
    assert snapshot(mapping_store, "prod", ["TOKEN", "TOKEN"]) == {"TOKEN": "prod-token"}
