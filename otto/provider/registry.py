"""Registry of constructed PR backends."""

import logging
import threading
from typing import List

from otto.provider.base import BackendNotFoundError, PRBackend

LOG = logging.getLogger("otto.provider.registry")


class Registry:
    """Ordered backends; lookup by URL (first match wins) or exact name."""

    def __init__(self, backends: List[PRBackend] | None = None) -> None:
        self._backends: List[PRBackend] = list(backends or [])

    def register(self, backend: PRBackend) -> None:
        self._backends.append(backend)
        LOG.debug("Registered backend %s", backend.name)

    def names(self) -> List[str]:
        return [b.name for b in self._backends]

    def get(self, name: str) -> PRBackend:
        for backend in self._backends:
            if backend.name == name:
                return backend
        raise BackendNotFoundError(f"no registered backend named {name!r}")

    def detect(self, url: str) -> PRBackend:
        for backend in self._backends:
            if backend.matches_url(url):
                return backend
        raise BackendNotFoundError(f"no registered backend for URL {url!r}")


def build_registry(config, cancel: threading.Event | None = None) -> Registry:
    """Construct enabled backends from AppConfig (ado first, then github)."""
    from otto.provider.ado import AdoBackend
    from otto.provider.github import GitHubBackend

    registry = Registry()
    ado_cfg = config.pr.providers.ado
    if ado_cfg.enabled:
        registry.register(
            AdoBackend(
                organization=ado_cfg.organization,
                project=ado_cfg.project,
                repository=ado_cfg.repository,
                pat=config.ado_pat_resolved,
                bot_identities=ado_cfg.bot_identities,
                area_path=ado_cfg.work_item_area_path,
                cancel=cancel,
            )
        )
    gh_cfg = config.pr.providers.github
    if gh_cfg.enabled:
        registry.register(
            GitHubBackend(
                token=config.github_token_resolved or "",
                owner=gh_cfg.owner,
                repository=gh_cfg.repository,
                api_url=gh_cfg.api_url,
                cancel=cancel,
            )
        )
    if not registry.names():
        LOG.warning("No PR providers enabled (pr.providers.ado.enabled / pr.providers.github.enabled)")
    return registry
