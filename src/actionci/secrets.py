# secrets.py
from __future__ import annotations

import os
from typing import Dict, Iterable, Mapping, Optional, Protocol

from .errors import SecretNotFoundError
from .model import EnvironmentConfig


class SecretStore(Protocol):
    def resolve(self, environment: Optional[str], name: str) -> str:
        """Return the secret value or raise SecretNotFoundError."""
        ...


class MappingSecretStore:
    """
    Secrets from environment configs, falling back to repository-level
    secrets shared by every job.
    """

    def __init__(
        self,
        environments: Optional[Mapping[str, EnvironmentConfig]] = None,
        repository: Optional[Mapping[str, str]] = None,
    ):
        self.environments = dict(environments or {})
        self.repository = dict(repository or {})

    def resolve(self, environment: Optional[str], name: str) -> str:
        if environment is not None:
            cfg = self.environments.get(environment)
            if cfg is not None and name in cfg.secrets:
                return cfg.secrets[name]
        if name in self.repository:
            return self.repository[name]
        raise SecretNotFoundError(environment, name)


class EnvSecretStore:
    """
    Secrets from process env vars:
      ACTIONCI_SECRET_<ENV>_<NAME>  (environment scoped)
      ACTIONCI_SECRET_<NAME>        (repository scoped)
    """

    def __init__(self, prefix: str = "ACTIONCI_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self.environ = environ if environ is not None else os.environ

    def _key(self, *parts: str) -> str:
        return self.prefix + "_".join(p.upper().replace("-", "_") for p in parts)

    def resolve(self, environment: Optional[str], name: str) -> str:
        if environment:
            key = self._key(environment, name)
            if key in self.environ:
                return self.environ[key]
        key = self._key(name)
        if key in self.environ:
            return self.environ[key]
        raise SecretNotFoundError(environment, name)


class ChainSecretStore:
    """First store that knows the secret wins."""

    def __init__(self, *stores: SecretStore):
        self.stores = stores

    def resolve(self, environment: Optional[str], name: str) -> str:
        for store in self.stores:
            try:
                return store.resolve(environment, name)
            except SecretNotFoundError:
                continue
        raise SecretNotFoundError(environment, name)


def snapshot(store: SecretStore, environment: Optional[str], names: Iterable[str]) -> Dict[str, str]:
    """Resolve `names` for one job execution. Raises on the first missing secret."""
    return {name: store.resolve(environment, name) for name in sorted(set(names))}
