"""Draft maintenance CLI.

    python -m guidedflow drafts list --user <user_id>
    python -m guidedflow drafts show <draft_id>
    python -m guidedflow drafts delete <draft_id>
    python -m guidedflow drafts cleanup --user <user_id> [--max-age-hours N]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from guidedflow.core.config import ConfigResolver, EngineSettings
from guidedflow.core.drafts import FileDraftStore, Principal
from guidedflow.core.errors import GuidedFlowError
from guidedflow.core.flow.dependencies import DEFAULT_STEP_ORDER
from guidedflow.core.flow.store import FlowDataStore
from guidedflow.core.logging import apply_logging_policy, set_colors
from guidedflow.recovery.manager import RecoveryManager


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="guidedflow")
    p.add_argument("--config", dest="config_path", default=None, help="user config YAML")
    p.add_argument("--drafts-dir", dest="drafts_dir", default=None)
    p.add_argument("-q", "--quiet", action="store_true", default=False)
    p.add_argument("-v", "--verbose", action="store_true", default=False)
    p.add_argument("-d", "--debug", action="store_true", default=False)
    p.add_argument("--no-color", action="store_true", default=False)

    sub = p.add_subparsers(dest="cmd")
    drafts = sub.add_parser("drafts")
    d_sub = drafts.add_subparsers(dest="drafts_cmd")

    ls = d_sub.add_parser("list")
    ls.add_argument("--user", required=True)
    ls.add_argument("--json", action="store_true", default=False, dest="as_json")

    show = d_sub.add_parser("show")
    show.add_argument("draft_id")

    rm = d_sub.add_parser("delete")
    rm.add_argument("draft_id")

    cleanup = d_sub.add_parser("cleanup")
    cleanup.add_argument("--user", required=True)
    cleanup.add_argument("--max-age-hours", type=float, default=None)
    return p


def _cli_overrides(ns: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if ns.drafts_dir:
        overrides["drafts"] = {"dir": ns.drafts_dir}
    if ns.debug:
        overrides["logging"] = {"level": "debug"}
    elif ns.verbose:
        overrides["logging"] = {"level": "verbose"}
    elif ns.quiet:
        overrides["logging"] = {"level": "quiet"}
    if ns.no_color:
        overrides.setdefault("logging", {})["color"] = False
    if getattr(ns, "max_age_hours", None) is not None:
        overrides["recovery"] = {"max_draft_age_hours": ns.max_age_hours}
    return overrides


async def _run(ns: argparse.Namespace, resolver: ConfigResolver) -> int:
    settings = EngineSettings.from_resolver(resolver)
    store = FileDraftStore(Path(settings.drafts_dir).expanduser())

    if ns.drafts_cmd == "list":
        summaries = sorted(
            await store.list_drafts(ns.user), key=lambda s: s.updated_at, reverse=True
        )
        if ns.as_json:
            rows = [
                {
                    "id": s.id,
                    "estimate_id": s.estimate_id,
                    "updated_at": s.updated_at.isoformat(),
                    "version": s.version,
                    "current_step": s.current_step,
                    "progress": s.progress(DEFAULT_STEP_ORDER).percentage,
                    "recovery_attempts": s.recovery_attempts,
                }
                for s in summaries
            ]
            print(json.dumps(rows, indent=2))
            return 0
        if not summaries:
            print(f"No drafts for user {ns.user}")
            return 0
        for s in summaries:
            pct = s.progress(DEFAULT_STEP_ORDER).percentage
            print(
                f"{s.id}  v{s.version}  step {s.current_step} ({pct}%)  {s.updated_at.isoformat()}"
            )
        return 0

    if ns.drafts_cmd == "show":
        draft = await store.get_draft(ns.draft_id)
        print(json.dumps(draft.to_dict(), indent=2, sort_keys=True))
        return 0

    if ns.drafts_cmd == "delete":
        if await store.delete_draft(ns.draft_id):
            print(f"Deleted {ns.draft_id}")
            return 0
        print(f"Draft {ns.draft_id} not found")
        return 1

    if ns.drafts_cmd == "cleanup":
        manager = RecoveryManager(
            store,
            Principal(user_id=ns.user, estimate_id=""),
            FlowDataStore(""),
            max_draft_age_hours=settings.max_draft_age_hours,
        )
        count = await manager.cleanup_expired_drafts()
        print(f"Removed {count} expired draft(s)")
        return 0

    return 2


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    ns = parser.parse_args(argv)
    if ns.cmd != "drafts" or not ns.drafts_cmd:
        parser.print_help()
        return 2

    resolver = ConfigResolver(
        cli_args=_cli_overrides(ns),
        user_config_path=Path(ns.config_path) if ns.config_path else None,
    )
    try:
        apply_logging_policy(resolver.resolve_logging_policy())
        set_colors(resolver.resolve_bool("logging.color"))
        return asyncio.run(_run(ns, resolver))
    except GuidedFlowError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
