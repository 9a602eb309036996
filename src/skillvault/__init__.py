from ._version import __version__
from .catalog import CatalogCache, CatalogEntry, CatalogInstaller, search_catalog
from .config import Config, load_config, save_config
from .context import VaultContext, build_context
from .errors import (
    AlreadyExistsError,
    BusyError,
    CatalogError,
    FatalIOError,
    NotFoundError,
    NotLinkedError,
    SkillvaultError,
    SyncError,
    UnlinkFailedError,
    UnsupportedError,
    VcsError,
)
from .links import DirectoryLink, JunctionLink, LinkManager, SymlinkLink, ToolStatus, default_directory_link
from .mover import MoveResult, StateMover
from .notes import NoteStore
from .paths import SUPPORTED_TOOLS, PathResolver, ToolDefinition
from .scanner import Skill, find_skill_dirs, scan
from .sources import SkillSource, SourceRegistry, SourceSync, SyncResult, UpdateCheck, parse_source_url
from .vcs import GitClient, VcsClient
from .warehouse import SkillLocation, WarehouseStore

__all__ = [
    "__version__",
    "AlreadyExistsError",
    "BusyError",
    "CatalogCache",
    "CatalogEntry",
    "CatalogError",
    "CatalogInstaller",
    "Config",
    "DirectoryLink",
    "FatalIOError",
    "GitClient",
    "JunctionLink",
    "LinkManager",
    "MoveResult",
    "NotFoundError",
    "NotLinkedError",
    "NoteStore",
    "PathResolver",
    "SUPPORTED_TOOLS",
    "Skill",
    "SkillLocation",
    "SkillSource",
    "SkillvaultError",
    "SourceRegistry",
    "SourceSync",
    "StateMover",
    "SymlinkLink",
    "SyncError",
    "SyncResult",
    "ToolDefinition",
    "ToolStatus",
    "UnlinkFailedError",
    "UnsupportedError",
    "UpdateCheck",
    "VaultContext",
    "VcsClient",
    "VcsError",
    "WarehouseStore",
    "build_context",
    "default_directory_link",
    "find_skill_dirs",
    "load_config",
    "parse_source_url",
    "save_config",
    "scan",
    "search_catalog",
]
