"""ADO workflow actions: auto-complete, follow-up work item, review-bot threads."""

import logging
from typing import TYPE_CHECKING, List

from otto.provider.base import ProviderError, UnsupportedOperationError
from otto.provider.models import Comment, PRInfo, WorkflowAction

if TYPE_CHECKING:
    from otto.provider.ado.backend import AdoBackend

# Bot threads with this text carry nothing actionable and are closed as by-design.
NO_FEEDBACK_MARKER = "There is no AI feedback on this pull request"

THREAD_BY_DESIGN = 5

LOG = logging.getLogger("otto.provider.ado.workflow")


class AdoWorkflowMixin:
    """run_workflow for AdoBackend."""

    def run_workflow(self: "AdoBackend", pr: PRInfo, action: WorkflowAction) -> None:
        action = WorkflowAction(action)
        if action == WorkflowAction.SUBMIT:
            raise UnsupportedOperationError("workflow 'submit' is not supported by ado")
        if action == WorkflowAction.AUTO_COMPLETE:
            self._workflow_auto_complete(pr)
        elif action == WorkflowAction.CREATE_WORK_ITEM:
            self._workflow_create_work_item(pr)
        elif action == WorkflowAction.ADDRESS_BOT:
            self._workflow_address_bot(pr)

    def _workflow_auto_complete(self: "AdoBackend", pr: PRInfo) -> None:
        user_id = self.get_current_user_id(pr)
        update = {
            "autoCompleteSetBy": {"id": user_id},
            "completionOptions": {
                "mergeStrategy": "squash",
                "deleteSourceBranch": True,
                "transitionWorkItems": True,
            },
        }
        self._request("PATCH", self._pr_path(pr), json=update)
        LOG.info("Auto-complete enabled for PR %s", pr.id)

    def _workflow_create_work_item(self: "AdoBackend", pr: PRInfo) -> None:
        ops = [
            {"op": "add", "path": "/fields/System.Title", "value": f"Follow-up: {pr.title}"},
            {
                "op": "add",
                "path": "/fields/System.Description",
                "value": f"Auto-created from PR #{pr.id}: {pr.title}\n\n{pr.url}",
            },
            {
                "op": "add",
                "path": "/relations/-",
                "value": {"rel": "ArtifactLink", "url": pr.url, "attributes": {"name": "Pull Request"}},
            },
        ]
        if self.area_path:
            ops.append({"op": "add", "path": "/fields/System.AreaPath", "value": self.area_path})
        resp = self._request(
            "POST",
            self._project_path(pr, "/wit/workitems/$Task"),
            json=ops,
            content_type="application/json-patch+json",
        )
        try:
            work_item_id = resp.json().get("id")
        except ValueError:
            LOG.warning("Work item created for PR %s but the response could not be decoded", pr.id)
            return
        LOG.info("Work item %s created for PR %s", work_item_id, pr.id)

    def bot_threads(self: "AdoBackend", pr: PRInfo) -> List[Comment]:
        """Unresolved threads whose author is one of the configured bot identities."""
        identities = set(self.bot_identities)
        threads: dict[str, Comment] = {}
        for c in self.get_comments(pr):
            if c.author in identities and not c.is_resolved and c.thread_id not in threads:
                threads[c.thread_id] = c
        return list(threads.values())

    def _workflow_address_bot(self: "AdoBackend", pr: PRInfo) -> None:
        threads = self.bot_threads(pr)
        if not threads:
            LOG.info("No unresolved bot threads on PR %s", pr.id)
            return
        LOG.info("Found %s unresolved bot thread(s) on PR %s", len(threads), pr.id)
        for c in threads:
            if NO_FEEDBACK_MARKER in c.body:
                try:
                    self.update_thread_status(pr, c.thread_id, THREAD_BY_DESIGN)
                    LOG.info("Closed empty bot thread %s on PR %s", c.thread_id, pr.id)
                except ProviderError as e:
                    LOG.warning("Failed to close bot thread %s: %s", c.thread_id, e)
                continue
            LOG.debug("Bot thread %s at %s:%s: %s", c.thread_id, c.file_path, c.line, c.body)
