"""Otto entry point.

Usage:
    otto [--config PATH] pr add <url-or-id> [--provider NAME]
    otto [--config PATH] pr remove <id> [--provider NAME]
    otto [--config PATH] pr list
    otto [--config PATH] daemon start | stop | status | run
"""

import argparse
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from otto.config import AppConfig, load_config
from otto.logging import OttoLogging
from otto.provider import BackendNotFoundError, ProviderError, WorkflowAction, build_registry
from otto.store import LockTimeoutError, PRDocument, PRNotFoundError, PRStore

LOG = logging.getLogger("otto")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI: pr add|remove|list, daemon start|stop|status|run."""
    parser = argparse.ArgumentParser(
        prog="otto",
        description="Otto - watch pull requests, fix failing CI and answer review comments",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=None,
        help="Path to YAML config file (default: ~/.config/otto/config.yaml)",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Only load and validate config, then exit",
    )
    sub = parser.add_subparsers(dest="command")

    pr = sub.add_parser("pr", help="Manage tracked pull requests")
    pr_sub = pr.add_subparsers(dest="pr_command", required=True)
    add = pr_sub.add_parser("add", help="Start tracking a PR")
    add.add_argument("target", help="PR URL, or a bare PR id together with --provider")
    add.add_argument("--provider", help="Backend name (ado, github)")
    remove = pr_sub.add_parser("remove", help="Stop tracking a PR")
    remove.add_argument("id", help="PR id")
    remove.add_argument("--provider", help="Backend name, when the id is tracked by several")
    pr_sub.add_parser("list", help="List tracked PRs")

    daemon = sub.add_parser("daemon", help="Control the background daemon")
    daemon.add_argument("action", choices=("start", "stop", "status", "run"))
    return parser.parse_args(argv)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def cmd_pr_add(config: AppConfig, target: str, provider: str | None = None) -> int:
    registry = build_registry(config)
    try:
        backend = registry.get(provider) if provider else registry.detect(target)
    except BackendNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        if not provider and target.isdigit():
            print("Hint: pass --provider for a bare PR id", file=sys.stderr)
        return 1

    try:
        pr = backend.get_pr(target)
    except ProviderError as e:
        print(f"Error: failed to fetch PR {target}: {e}", file=sys.stderr)
        return 1

    store = PRStore(config.pr.store_path)
    if store.exists(backend.name, pr.id):
        print(f"PR {backend.name}/{pr.id} is already tracked")
        return 1

    doc = PRDocument(
        id=pr.id,
        provider=backend.name,
        title=pr.title,
        repo=pr.repo_id,
        branch=pr.source_branch,
        target=pr.target_branch,
        url=pr.url,
        created=_now(),
        max_fix_attempts=config.pr.max_fix_attempts,
    )
    doc.append_entry(f"# PR #{pr.id}: {pr.title}\n\n### Tracking started - {doc.created}\n- Author: {pr.author}")
    store.save(doc)
    print(f"Tracking {backend.name}/{pr.id}: {pr.title}")

    if backend.name == "ado" and config.pr.providers.ado.auto_complete:
        try:
            backend.run_workflow(pr, WorkflowAction.AUTO_COMPLETE)
            print("Auto-complete enabled")
        except ProviderError as e:
            LOG.warning("Failed to enable auto-complete for PR %s: %s", pr.id, e)

    from otto.daemon import trigger_poll

    if trigger_poll(config):
        print("Daemon notified")
    return 0


def cmd_pr_remove(config: AppConfig, pr_id: str, provider: str | None = None) -> int:
    store = PRStore(config.pr.store_path)
    try:
        if provider is None:
            provider = store.find(pr_id).provider
        store.delete(provider, pr_id)
    except (PRNotFoundError, LockTimeoutError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Stopped tracking {provider}/{pr_id}")
    return 0


def cmd_pr_list(config: AppConfig) -> int:
    docs = PRStore(config.pr.store_path).list()
    if not docs:
        print("No tracked PRs")
        return 0
    for d in docs:
        print(
            f"{d.provider:<7} {d.id:<8} {d.status:<10} fixes {d.fix_attempts}/{d.max_fix_attempts}"
            f"  pipeline {d.pipeline_state or '-':<11} {d.title}\n"
            f"        waiting on: {d.waiting_on}"
        )
    return 0


def cmd_daemon(config: AppConfig, action: str, config_path: Path | None) -> int:
    from otto import daemon

    if action == "run":
        return daemon.run_daemon(config)
    if action == "start":
        try:
            pid = daemon.start_daemon(config, config_path)
        except RuntimeError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print(f"Daemon started (pid {pid})")
        return 0
    if action == "stop":
        try:
            stopped = daemon.stop_daemon(config)
        except TimeoutError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        print("Daemon stopped" if stopped else "Daemon is not running")
        return 0
    pid = daemon.is_running(daemon.pid_path(config))
    if pid is None:
        print("Daemon is not running")
        return 1
    print(f"Daemon running (pid {pid}), log: {daemon.log_path(config)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point: dispatch to pr or daemon commands."""
    args = parse_args(argv)
    config = load_config(args.config)

    if args.check:
        print("Config OK:", config.pr.store_path, ",".join(build_registry(config).names()) or "no providers")
        return 0

    if args.command != "daemon" or args.action != "run":
        OttoLogging(config.logging).setup()

    try:
        if args.command == "pr":
            if args.pr_command == "add":
                return cmd_pr_add(config, args.target, args.provider)
            if args.pr_command == "remove":
                return cmd_pr_remove(config, args.id, args.provider)
            return cmd_pr_list(config)
        if args.command == "daemon":
            return cmd_daemon(config, args.action, args.config)
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logging.getLogger("otto").exception("Fatal error: %s", e)
        return 1
    print("Usage: otto [--config PATH] {pr,daemon} ...  (see otto --help)", file=sys.stderr)
    return 2


if __name__ == "__main__":
    sys.exit(main())
