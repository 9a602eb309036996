from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from dataclasses import asdict
from typing import Any

from ._version import __version__
from .catalog import find_entry, search_catalog, top_entries
from .config import config_path, load_config, save_config, set_config_value
from .context import VaultContext, build_context
from .errors import SkillvaultError
from .mover import MoveResult
from .sources import SyncResult

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [0] * len(rows[0])
    for r in rows:
        for i, c in enumerate(r):
            widths[i] = max(widths[i], len(c))
    for r in rows:
        line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
        print(line.rstrip())


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False))


def _truncate(text: str, width: int = 60) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skillvault",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Manage a central warehouse of agent skills and link it into AI coding tools.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              SKILLVAULT_CONFIG_PATH, SKILLVAULT_WAREHOUSE, SKILLVAULT_CATALOG_URL, SKILLVAULT_TIMEOUT_S
            """
        ),
    )
    p.add_argument("--warehouse", help="Warehouse root (default: ~/.agent/skills)")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    p.add_argument("--version", action="version", version=f"skillvault {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init", help="Create the warehouse directories")

    ls = sub.add_parser("list", help="List skills in the warehouse")
    ls.add_argument("--state", choices=["enabled", "disabled"], help="Only show one partition")
    ls.add_argument("--json", action="store_true", help="Print raw JSON")

    enable = sub.add_parser("enable", help="Move a skill to enabled/")
    enable.add_argument("name")
    disable = sub.add_parser("disable", help="Move a skill to disabled/")
    disable.add_argument("name")
    delete = sub.add_parser("delete", help="Delete a skill (and its note)")
    delete.add_argument("name")

    new = sub.add_parser("new", help="Create a skill from the SKILL.md template")
    new.add_argument("name")
    new.add_argument("--description", default="", help="Frontmatter description")
    new.add_argument("--enabled", action="store_true", help="Create it in enabled/ instead of disabled/")

    # tools
    tools = sub.add_parser("tools", help="Link AI tools to the warehouse")
    tools_sub = tools.add_subparsers(dest="subcmd", required=True)
    tools_list = tools_sub.add_parser("list", help="Show link status per tool")
    tools_list.add_argument("--json", action="store_true", help="Print raw JSON")
    tools_link = tools_sub.add_parser("link", help="Replace the tool's skills dir with a link to the warehouse")
    tools_link.add_argument("tool")
    tools_unlink = tools_sub.add_parser("unlink", help="Replace the link with an ordinary directory")
    tools_unlink.add_argument("tool")
    tools_unlink.add_argument("--sync-back", action="store_true", help="Copy enabled skills into the new directory")

    # sources
    sources = sub.add_parser("sources", help="Git repositories that provide skills")
    src_sub = sources.add_subparsers(dest="subcmd", required=True)
    src_list = src_sub.add_parser("list", help="List registered sources")
    src_list.add_argument("--json", action="store_true", help="Print raw JSON")
    src_add = src_sub.add_parser("add", help="Register a source and import its skills")
    src_add.add_argument("url", help="owner/repo or https://github.com/owner/repo[/tree/<branch>/<path>]")
    src_add.add_argument("--branch")
    src_add.add_argument("--subpath", help="Directory inside the repository (default: whole repo)")
    src_add.add_argument("--name", help="Display name")
    src_sync = src_sub.add_parser("sync", help="Sync one source, or every enabled source")
    src_sync.add_argument("id", nargs="?")
    src_check = src_sub.add_parser("check", help="Check sources for remote changes")
    src_check.add_argument("id", nargs="?")
    src_rm = src_sub.add_parser("remove", help="Forget a source (imported skills are kept)")
    src_rm.add_argument("id")
    src_enable = src_sub.add_parser("enable", help="Include a source in bulk sync/check")
    src_enable.add_argument("id")
    src_disable = src_sub.add_parser("disable", help="Exclude a source from bulk sync/check")
    src_disable.add_argument("id")

    # catalog
    catalog = sub.add_parser("catalog", help="Browse the public skill catalog")
    cat_sub = catalog.add_subparsers(dest="subcmd", required=True)
    cat_search = cat_sub.add_parser("search", help="Search the catalog (top entries when no query)")
    cat_search.add_argument("query", nargs="*")
    cat_search.add_argument("--limit", type=int, default=20)
    cat_search.add_argument("--refresh", action="store_true", help="Ignore the cached listing")
    cat_search.add_argument("--json", action="store_true", help="Print raw JSON")
    cat_install = cat_sub.add_parser("install", help="Install a catalog entry into disabled/")
    cat_install.add_argument("id")
    cat_install.add_argument("--refresh", action="store_true", help="Ignore the cached listing")

    # notes
    notes = sub.add_parser("notes", help="Personal notes attached to skills")
    notes_sub = notes.add_subparsers(dest="subcmd", required=True)
    notes_sub.add_parser("list", help="List all notes")
    notes_get = notes_sub.add_parser("get", help="Print a skill's note")
    notes_get.add_argument("name")
    notes_set = notes_sub.add_parser("set", help="Set a skill's note")
    notes_set.add_argument("name")
    notes_set.add_argument("text")
    notes_rm = notes_sub.add_parser("rm", help="Remove a skill's note")
    notes_rm.add_argument("name")

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set one config field (tool_paths.<tool> for tool overrides)")
    cfg_set.add_argument("key")
    cfg_set.add_argument("value")

    return p


def _context(args: argparse.Namespace) -> VaultContext:
    return build_context(load_config(), warehouse_override=args.warehouse)


def _report_move(verb: str, name: str, result: MoveResult) -> None:
    print(f"{verb}: {name}")
    if result.soft:
        print(f"warning: could not remove {result.leftover}; delete it manually")


def _print_sync_result(result: SyncResult) -> None:
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["added", str(len(result.added))],
            ["updated", str(len(result.updated))],
            ["failed", str(len(result.failed))],
        ]
    )
    for name in result.added:
        print(f"added: {name}")
    for name in result.updated:
        print(f"updated: {name}")
    for name, reason in result.failed:
        print(f"warning: {name} failed: {reason}")
    for warning in result.warnings:
        print(f"warning: {warning}")


def cmd_init(args: argparse.Namespace) -> int:
    ctx = _context(args)
    print(str(ctx.store.initialize()))
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    ctx = _context(args)
    skills = [s for s in ctx.store.enumerate() if not args.state or s.state == args.state]
    notes = ctx.notes.many(s.name for s in skills)

    if args.json:
        _print_json(
            [
                {
                    "name": s.name,
                    "state": s.state,
                    "description": s.description,
                    "origin": s.origin,
                    "source_id": s.source_id,
                    "source_url": s.source_url,
                    "revision": s.revision,
                    "path": str(s.path),
                    "note": notes.get(s.name),
                }
                for s in skills
            ]
        )
        return 0

    if not skills:
        print("No skills found.")
        return 0
    rows = [["NAME", "STATE", "ORIGIN", "DESCRIPTION"]]
    for s in skills:
        origin = f"{s.origin}:{s.source_id}" if s.source_id else s.origin
        rows.append([s.name, s.state, origin, _truncate(s.description)])
    _print_table(rows)
    return 0


def cmd_enable(args: argparse.Namespace) -> int:
    _report_move("enabled", args.name, _context(args).enable_skill(args.name))
    return 0


def cmd_disable(args: argparse.Namespace) -> int:
    _report_move("disabled", args.name, _context(args).disable_skill(args.name))
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    loc = _context(args).delete_skill(args.name)
    print(f"deleted: {loc.name} ({loc.state})")
    return 0


def cmd_new(args: argparse.Namespace) -> int:
    loc = _context(args).store.create(args.name, description=args.description, enabled=args.enabled)
    print(f"created: {loc.path}")
    return 0


def cmd_tools(args: argparse.Namespace) -> int:
    ctx = _context(args)

    if args.subcmd == "list":
        statuses = ctx.links.status_all()
        if args.json:
            _print_json(
                [
                    {
                        "id": st.tool.id,
                        "name": st.tool.name,
                        "state": st.state,
                        "path": str(st.path),
                        "link_target": str(st.link_target) if st.link_target else None,
                        "skills_count": st.skills_count,
                    }
                    for st in statuses
                ]
            )
            return 0
        rows = [["TOOL", "STATE", "SKILLS", "PATH"]]
        for st in statuses:
            rows.append([st.tool.id, st.state, str(st.skills_count) if st.installed else "-", str(st.path)])
        _print_table(rows)
        return 0

    if args.subcmd == "link":
        path = ctx.link_tool(args.tool)
        print(f"linked: {args.tool} {path} -> {ctx.store.enabled_dir}")
        return 0

    if args.subcmd == "unlink":
        path = ctx.unlink_tool(args.tool, sync_back=args.sync_back)
        print(f"unlinked: {args.tool} {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_sources(args: argparse.Namespace) -> int:
    ctx = _context(args)
    sync = ctx.sources

    if args.subcmd == "list":
        sources = sync.list_sources()
        if args.json:
            _print_json([s.to_json() for s in sources])
            return 0
        if not sources:
            print("No sources registered.")
            return 0
        rows = [["ID", "STATUS", "SKILLS", "UPDATE", "BRANCH", "SUBPATH"]]
        for s in sources:
            flag = "yes" if s.has_update else "-"
            status = s.status if s.enabled else f"{s.status} (disabled)"
            rows.append([s.id, status, str(s.package_count), flag, s.branch, s.subpath])
        _print_table(rows)
        return 0

    if args.subcmd == "add":
        source, result = sync.add_source(args.url, name=args.name, branch=args.branch, subpath=args.subpath)
        print(f"source: {source.id} ({source.repo_url}@{source.branch}, {source.subpath})")
        _print_sync_result(result)
        return 0

    if args.subcmd == "sync":
        if args.id:
            _print_sync_result(sync.sync_source(args.id))
            return 0
        batch = sync.sync_all()
        for result in batch.results:
            print(f"{result.source_id}: {len(result.added)} added, {len(result.updated)} updated")
            for name, reason in result.failed:
                print(f"warning: {result.source_id}/{name} failed: {reason}")
        for sid, reason in batch.failed:
            print(f"error: {sid}: {reason}", file=sys.stderr)
        print(f"synced {len(batch.succeeded)}/{batch.total} sources")
        return 1 if batch.failed else 0

    if args.subcmd == "check":
        checks = [sync.check_for_updates(args.id)] if args.id else sync.check_all_for_updates()
        rows = [["ID", "UPDATE", "LOCAL", "REMOTE"]]
        for c in checks:
            rows.append(
                [
                    c.source_id,
                    "yes" if c.has_update else "no",
                    (c.local_revision or "-")[:12],
                    (c.remote_revision or "-")[:12],
                ]
            )
        _print_table(rows)
        for c in checks:
            if c.error:
                print(f"warning: {c.source_id}: {c.error}")
        return 0

    if args.subcmd == "remove":
        source = sync.remove_source(args.id)
        print(f"removed: {source.id} (imported skills kept)")
        return 0

    if args.subcmd in ("enable", "disable"):
        source = sync.update_source(args.id, enabled=args.subcmd == "enable")
        print(f"{args.subcmd}d: {source.id}")
        return 0

    raise AssertionError("unreachable")


def cmd_catalog(args: argparse.Namespace) -> int:
    ctx = _context(args)
    entries = ctx.catalog.get(force_refresh=args.refresh)

    if args.subcmd == "search":
        query = " ".join(args.query).strip()
        found = search_catalog(entries, query) if query else top_entries(entries, args.limit)
        found = found[: max(0, args.limit)]
        if args.json:
            _print_json([e.to_json() for e in found])
            return 0
        if not found:
            print("No catalog entries found.")
            return 0
        rows = [["ID", "STARS", "AUTHOR", "DESCRIPTION"]]
        for e in found:
            rows.append([e.id, str(e.stars), e.author, _truncate(e.description, 50)])
        _print_table(rows)
        return 0

    if args.subcmd == "install":
        entry = find_entry(entries, args.id)
        result = ctx.installer.install(entry)
        _print_sync_result(result)
        return 0

    raise AssertionError("unreachable")


def cmd_notes(args: argparse.Namespace) -> int:
    ctx = _context(args)

    if args.subcmd == "list":
        rows = [["SKILL", "NOTE"]]
        for key, note in sorted(ctx.notes.all().items()):
            rows.append([key, _truncate(note.note)])
        _print_table(rows)
        return 0

    if args.subcmd == "get":
        note = ctx.notes.get(args.name)
        if note is None:
            print(f"error: no note for {args.name}", file=sys.stderr)
            return 1
        print(note)
        return 0

    if args.subcmd == "set":
        ctx.notes.set(args.name, args.text)
        print(f"saved note: {args.name}")
        return 0

    if args.subcmd == "rm":
        removed = ctx.notes.delete(args.name)
        print(f"removed note: {args.name}" if removed else f"no note for {args.name}")
        return 0

    raise AssertionError("unreachable")


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        _print_json(asdict(load_config()))
        return 0

    if args.subcmd == "set":
        new_cfg = set_config_value(load_config(), args.key, args.value)
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


_COMMANDS = {
    "init": cmd_init,
    "list": cmd_list,
    "enable": cmd_enable,
    "disable": cmd_disable,
    "delete": cmd_delete,
    "new": cmd_new,
    "tools": cmd_tools,
    "sources": cmd_sources,
    "catalog": cmd_catalog,
    "notes": cmd_notes,
    "config": cmd_config,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, format=LOG_FORMAT)
    try:
        return _COMMANDS[args.cmd](args)
    except SkillvaultError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
