"""Pydantic schemas for the PR store."""

from otto.store.schemas.pr_document import PRDocument

__all__ = ["PRDocument"]
