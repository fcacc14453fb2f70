"""Azure DevOps backend."""

from otto.provider.ado.auth import AdoAuth
from otto.provider.ado.backend import AdoBackend, aggregate_builds, is_thread_resolved, parse_pr_identifier

__all__ = ["AdoAuth", "AdoBackend", "aggregate_builds", "is_thread_resolved", "parse_pr_identifier"]
