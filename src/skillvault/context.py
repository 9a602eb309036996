from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from .catalog import CatalogCache, CatalogInstaller, fetch_catalog_json
from .config import Config, apply_env_overrides
from .links import DirectoryLink, LinkManager
from .mover import MoveResult, StateMover
from .notes import NoteStore
from .paths import PathResolver
from .sources import SourceSync
from .vcs import GitClient, VcsClient
from .warehouse import SkillLocation, WarehouseStore

logger = logging.getLogger(__name__)

CATALOG_CACHE_FILENAME = ".marketplace-cache.json"


@dataclass
class VaultContext:
    """Process-wide wiring of the engine components around one warehouse."""

    config: Config
    resolver: PathResolver
    store: WarehouseStore
    links: LinkManager
    vcs: VcsClient
    sources: SourceSync
    catalog: CatalogCache
    installer: CatalogInstaller
    notes: NoteStore

    def link_tool(self, tool_id: str) -> Path:
        # Tools see enabled/ only; tool-local packages merge into it unless either partition has the name.
        self.store.initialize()
        return self.links.link(
            tool_id,
            self.store.enabled_dir,
            reserved=(self.store.disabled_dir,),
        )

    def unlink_tool(self, tool_id: str, *, sync_back: bool = False) -> Path:
        return self.links.unlink(tool_id, self.store.enabled_dir, sync_back=sync_back)

    def enable_skill(self, name: str) -> MoveResult:
        return self.store.enable(name)

    def disable_skill(self, name: str) -> MoveResult:
        return self.store.disable(name)

    def delete_skill(self, name: str) -> SkillLocation:
        loc = self.store.delete(name)
        try:
            self.notes.delete(loc.name)
        except OSError as e:
            logger.warning("Deleted %s but could not drop its note: %s", loc.name, e)
        return loc


def build_context(
    cfg: Config | None = None,
    *,
    warehouse_override: str | Path | None = None,
    home: Path | None = None,
    link: DirectoryLink | None = None,
    vcs: VcsClient | None = None,
    fetcher: Callable[[str], Any] | None = None,
    clock: Callable[[], float] = time.time,
) -> VaultContext:
    cfg = apply_env_overrides(cfg or Config())
    resolver = PathResolver(
        home=home,
        warehouse_path=warehouse_override or cfg.warehouse_path,
        notes_path=cfg.notes_path,
        tool_paths=cfg.tool_paths,
    )
    mover = StateMover(retries=cfg.move_retries, backoff_s=cfg.move_backoff_s)
    store = WarehouseStore(resolver.warehouse_path, mover=mover)
    vcs_client = vcs or GitClient(cfg.git_executable)
    catalog = CatalogCache(
        cfg.catalog_url,
        fetcher=fetcher or functools.partial(fetch_catalog_json, timeout_s=cfg.timeout_s),
        clock=clock,
        ttl_s=cfg.catalog_ttl_s,
        cache_path=store.root / CATALOG_CACHE_FILENAME,
    )
    return VaultContext(
        config=cfg,
        resolver=resolver,
        store=store,
        links=LinkManager(resolver, link=link),
        vcs=vcs_client,
        sources=SourceSync(store, vcs_client, clock=clock),
        catalog=catalog,
        installer=CatalogInstaller(store, vcs_client, clock=clock),
        notes=NoteStore(resolver.notes_path, clock=clock),
    )
