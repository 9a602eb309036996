import json
import os
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

from skillvault.errors import AlreadyExistsError, NotFoundError, SkillvaultError, SyncError, VcsError
from skillvault.mover import StateMover
from skillvault.scanner import read_skill_meta
from skillvault.sources import (
    SkillSource,
    SourceRegistry,
    SourceSync,
    find_placeholder_targets,
    locate_packages,
    parse_source_url,
)
from skillvault.vcs import GitClient
from skillvault.warehouse import WarehouseStore


def _write(root: Path, rel: str, text: str = "# skill\n\nBody.\n") -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")
    return p


class FakeVcs:
    """
    In-memory stand-in for git: each clone URL maps to a fixture directory.

    Sparse checkouts only materialize the configured paths, which is enough
    to exercise placeholder resolution.
    """

    def __init__(self, remotes: dict[str, Path]) -> None:
        self.remotes = dict(remotes)
        self.revision = "rev1"
        self.heads = {"main": "rev1"}
        self.fail_ls_remote = False
        self.origins: dict[Path, str] = {}
        self.sparse: dict[Path, list[str]] = {}
        self.calls: list[tuple[str, ...]] = []

    def _fixture(self, url: str) -> Path:
        fixture = self.remotes.get(url)
        if fixture is None:
            raise VcsError(["git", "clone", url], 128, "fatal: repository not found")
        return fixture

    def _materialize(self, repo: Path) -> None:
        fixture = self._fixture(self.origins[repo])
        for item in list(repo.iterdir()):
            if item.name == ".git":
                continue
            if item.is_dir():
                shutil.rmtree(item)
            else:
                item.unlink()
        paths = self.sparse.get(repo)
        if paths is None:
            shutil.copytree(fixture, repo, symlinks=True, dirs_exist_ok=True)
            return
        for rel in paths:
            src = fixture / rel
            if src.is_symlink():
                # git checks symlinks out as links, dangling when the target is not in the sparse set
                (repo / rel).parent.mkdir(parents=True, exist_ok=True)
                os.symlink(os.readlink(src), repo / rel)
            elif src.is_dir():
                shutil.copytree(src, repo / rel, symlinks=True, dirs_exist_ok=True)
            elif src.is_file():
                (repo / rel).parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, repo / rel)

    def clone(self, url: str, dest: Path, *, branch: str, depth: int = 1) -> None:
        self.calls.append(("clone", url, branch))
        self._fixture(url)
        dest.mkdir(parents=True)
        self.origins[dest] = url
        self._materialize(dest)

    def init(self, dest: Path, url: str) -> None:
        self.calls.append(("init", url))
        (dest / ".git").mkdir(parents=True)
        self.origins[dest] = url

    def sparse_init(self, repo: Path) -> None:
        self.sparse[repo] = []

    def sparse_set(self, repo: Path, paths: list[str]) -> None:
        self.calls.append(("sparse_set", *paths))
        self.sparse[repo] = list(paths)

    def sparse_add(self, repo: Path, paths: list[str]) -> None:
        self.calls.append(("sparse_add", *paths))
        self.sparse.setdefault(repo, []).extend(paths)

    def fetch(self, repo: Path, branch: str, *, depth: int = 1) -> None:
        self._fixture(self.origins[repo])

    def checkout(self, repo: Path, branch: str) -> None:
        self._materialize(repo)

    def pull(self, repo: Path, branch: str) -> None:
        self.calls.append(("pull", branch))
        self._materialize(repo)

    def rev_parse(self, repo: Path, ref: str = "HEAD") -> str:
        return self.revision

    def ls_remote_head(self, repo: Path, branch: str) -> str | None:
        if self.fail_ls_remote:
            raise VcsError(["git", "ls-remote", "origin", branch], 128, "fatal: could not read from remote")
        return self.heads.get(branch)


class SourcesTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.tmp = Path(self._td.name)
        self.remotes_dir = self.tmp / "remotes"
        self.store = WarehouseStore(self.tmp / "wh", mover=StateMover(sleep=lambda s: None))
        self.vcs = FakeVcs({})
        self.clock_value = 1_700_000_000.0
        self.sync = SourceSync(self.store, self.vcs, clock=lambda: self.clock_value)

    def tearDown(self) -> None:
        self._td.cleanup()

    def remote(self, owner_repo: str) -> Path:
        root = self.remotes_dir / owner_repo
        root.mkdir(parents=True, exist_ok=True)
        self.vcs.remotes[f"https://github.com/{owner_repo}.git"] = root
        return root


class TestSourceSync(SourcesTestCase):
    def test_sparse_source_imports_into_disabled_then_preserves_state(self) -> None:
        repo = self.remote("acme/skills")
        _write(repo, ".claude/skills/pdf/SKILL.md", "---\ndescription: PDF v1\n---\n")
        _write(repo, ".claude/skills/xlsx/SKILL.md")
        _write(repo, "README.md", "# acme\n")

        source, result = self.sync.add_source("https://github.com/acme/skills/tree/main/.claude/skills")

        self.assertEqual(source.id, "acme-skills")
        self.assertEqual(source.subpath, ".claude/skills")
        self.assertEqual(source.status, "synced")
        self.assertEqual(source.package_count, 2)
        self.assertEqual(source.last_revision, "rev1")
        self.assertEqual(result.added, ("pdf", "xlsx"))
        self.assertEqual(result.updated, ())
        self.assertIn(("sparse_set", ".claude/skills"), self.vcs.calls)
        self.assertFalse((self.sync.checkout_dir("acme-skills") / "README.md").exists())
        self.assertTrue((self.store.disabled_dir / "pdf" / "SKILL.md").is_file())

        meta = read_skill_meta(self.store.disabled_dir / "pdf")
        self.assertEqual(meta["source"], "github")
        self.assertEqual(meta["sourceId"], "acme-skills")
        self.assertEqual(meta["commitHash"], "rev1")
        self.assertEqual(meta["installDate"], 1_700_000_000_000)

        self.store.enable("pdf")
        # Every import that overwrites an existing package counts as updated, whichever partition it is in.
        unchanged = self.sync.sync_source("acme-skills")
        self.assertEqual(unchanged.added, ())
        self.assertEqual(unchanged.updated, ("pdf", "xlsx"))
        self.assertEqual(self.store.locate("pdf").state, "enabled")

        _write(repo, ".claude/skills/pdf/SKILL.md", "---\ndescription: PDF v2\n---\n")
        _write(repo, ".claude/skills/docx/SKILL.md")
        self.vcs.revision = "rev2"

        again = self.sync.sync_source("acme-skills")

        self.assertEqual(again.added, ("docx",))
        self.assertEqual(sorted(again.updated), ["pdf", "xlsx"])
        self.assertIn(("pull", "main"), self.vcs.calls)
        self.assertEqual(self.store.locate("pdf").state, "enabled")
        enabled = {p.name for p in self.store.enabled_dir.iterdir()}
        disabled = {p.name for p in self.store.disabled_dir.iterdir()}
        self.assertEqual(enabled & disabled, set())
        self.assertEqual(self.store.get("pdf").description, "PDF v2")
        self.assertEqual(read_skill_meta(self.store.enabled_dir / "pdf")["commitHash"], "rev2")
        self.assertEqual(self.sync.get_source("acme-skills").package_count, 3)

    def test_root_package_is_named_after_source(self) -> None:
        repo = self.remote("acme/single")
        _write(repo, "SKILL.md", "---\ndescription: Whole repo\n---\n")

        _, result = self.sync.add_source("acme/single")

        self.assertEqual(result.added, ("acme-single",))
        self.assertEqual(self.store.get("acme-single").description, "Whole repo")
        self.assertFalse((self.store.disabled_dir / "acme-single" / ".git").exists())

    def test_placeholder_subpath_is_followed(self) -> None:
        repo = self.remote("acme/linked")
        _write(repo, ".claude/skills", "../skills")
        _write(repo, "skills/alpha/SKILL.md")
        _write(repo, "skills/beta/SKILL.md")

        _, result = self.sync.add_source("acme/linked", subpath=".claude/skills")

        self.assertIn(("sparse_add", "skills"), self.vcs.calls)
        self.assertEqual(result.added, ("alpha", "beta"))

    def test_placeholder_to_sibling_package(self) -> None:
        repo = self.remote("acme/shared")
        _write(repo, "skills/linked", "../shared-skill")
        _write(repo, "shared-skill/SKILL.md", "---\ndescription: Shared\n---\n")

        _, result = self.sync.add_source("https://github.com/acme/shared/tree/main/skills/linked")

        self.assertIn(("sparse_add", "shared-skill"), self.vcs.calls)
        self.assertEqual(result.added, ("shared-skill",))
        self.assertEqual(self.store.get("shared-skill").description, "Shared")

    def test_placeholder_files_inside_subpath_contribute_targets(self) -> None:
        repo = self.remote("acme/mixed")
        _write(repo, "skills/own/SKILL.md")
        _write(repo, "skills/shared", "../common/shared")
        _write(repo, "common/shared/SKILL.md")

        _, result = self.sync.add_source("https://github.com/acme/mixed/tree/main/skills")

        self.assertIn(("sparse_add", "common/shared"), self.vcs.calls)
        self.assertEqual(sorted(result.added), ["own", "shared"])

    @unittest.skipIf(sys.platform.startswith("win"), "symlink tests need POSIX")
    def test_symlinked_subpath_is_followed(self) -> None:
        repo = self.remote("acme/symlinked")
        _write(repo, "skills/alpha/SKILL.md")
        (repo / ".claude").mkdir()
        os.symlink("../skills", repo / ".claude" / "skills")

        source, result = self.sync.add_source("acme/symlinked", subpath=".claude/skills")

        self.assertIn(("sparse_add", "skills"), self.vcs.calls)
        self.assertEqual(result.added, ("alpha",))
        self.assertEqual(source.package_count, 1)

    @unittest.skipIf(sys.platform.startswith("win"), "symlink tests need POSIX")
    def test_symlinks_inside_subpath_contribute_targets(self) -> None:
        repo = self.remote("acme/linkdir")
        _write(repo, "skills/own/SKILL.md")
        _write(repo, "common/shared/SKILL.md")
        os.symlink("../common/shared", repo / "skills" / "shared")

        _, result = self.sync.add_source("https://github.com/acme/linkdir/tree/main/skills")

        self.assertIn(("sparse_add", "common/shared"), self.vcs.calls)
        self.assertEqual(sorted(result.added), ["own", "shared"])

    def test_failed_add_rolls_back(self) -> None:
        with self.assertRaises(SyncError):
            self.sync.add_source("owner/bad-repo")

        self.assertEqual(self.sync.list_sources(), [])
        self.assertFalse(self.store.sources_file.exists())
        self.assertFalse(self.sync.checkout_dir("owner-bad-repo").exists())

    def test_failed_add_keeps_other_sources(self) -> None:
        _write(self.remote("acme/good"), "skills/one/SKILL.md")
        self.sync.add_source("acme/good")

        with self.assertRaises(SyncError):
            self.sync.add_source("owner/bad-repo")

        self.assertEqual([s.id for s in self.sync.list_sources()], ["acme-good"])

    def test_duplicate_registration(self) -> None:
        _write(self.remote("acme/good"), "skills/one/SKILL.md")
        self.sync.add_source("acme/good")

        with self.assertRaises(AlreadyExistsError):
            self.sync.add_source("https://github.com/acme/good")

    def test_duplicate_names_keep_first(self) -> None:
        repo = self.remote("acme/dups")
        _write(repo, "a/dup/SKILL.md", "---\ndescription: first\n---\n")
        _write(repo, "b/dup/SKILL.md", "---\ndescription: second\n---\n")

        _, result = self.sync.add_source("acme/dups")

        self.assertEqual(result.added, ("dup",))
        self.assertTrue(any("Duplicate" in w for w in result.warnings))
        self.assertEqual(self.store.get("dup").description, "first")

    def test_empty_repository_syncs_with_warning(self) -> None:
        _write(self.remote("acme/empty"), "README.md", "nothing\n")

        source, result = self.sync.add_source("acme/empty")

        self.assertEqual(result.package_count, 0)
        self.assertEqual(source.status, "synced")
        self.assertTrue(result.warnings)

    def test_remove_source_keeps_imported_packages(self) -> None:
        _write(self.remote("acme/good"), "skills/one/SKILL.md")
        self.sync.add_source("acme/good")

        self.sync.remove_source("acme-good")

        self.assertEqual(self.sync.list_sources(), [])
        self.assertFalse(self.sync.checkout_dir("acme-good").exists())
        self.assertEqual(self.store.locate("one").state, "disabled")
        with self.assertRaises(NotFoundError):
            self.sync.remove_source("acme-good")

    def test_sync_all_skips_disabled_sources(self) -> None:
        _write(self.remote("acme/one"), "skills/a/SKILL.md")
        _write(self.remote("acme/two"), "skills/b/SKILL.md")
        self.sync.add_source("acme/one")
        self.sync.add_source("acme/two")
        self.sync.update_source("acme-two", enabled=False)
        del self.vcs.remotes["https://github.com/acme/one.git"]
        shutil.rmtree(self.sync.checkout_dir("acme-one"))

        outcome = self.sync.sync_all()

        self.assertEqual(outcome.total, 1)
        self.assertEqual(outcome.succeeded, ())
        self.assertEqual(outcome.failed[0][0], "acme-one")
        self.assertEqual(self.sync.get_source("acme-one").status, "error")

        status = self.sync.status()
        self.assertEqual(status.total_sources, 2)
        self.assertEqual(status.enabled_sources, 1)
        self.assertEqual(status.total_skills, 2)


class TestCheckForUpdates(SourcesTestCase):
    def setUp(self) -> None:
        super().setUp()
        _write(self.remote("acme/good"), "skills/one/SKILL.md")
        self.sync.add_source("acme/good")

    def test_same_revision_has_no_update(self) -> None:
        check = self.sync.check_for_updates("acme-good")

        self.assertFalse(check.has_update)
        self.assertEqual(check.remote_revision, "rev1")
        self.assertEqual(self.sync.get_source("acme-good").last_checked, 1_700_000_000_000)

    def test_new_remote_revision_is_an_update(self) -> None:
        self.vcs.heads["main"] = "rev2"

        check = self.sync.check_for_updates("acme-good")

        self.assertTrue(check.has_update)
        self.assertEqual(check.local_revision, "rev1")
        self.assertTrue(self.sync.get_source("acme-good").has_update)
        self.assertEqual(self.sync.status().updates_available, 1)

        self.sync.sync_source("acme-good")
        self.assertFalse(self.sync.get_source("acme-good").has_update)

    def test_missing_checkout_is_an_update(self) -> None:
        shutil.rmtree(self.sync.checkout_dir("acme-good"))

        self.assertTrue(self.sync.check_for_updates("acme-good").has_update)

    def test_query_failure_reports_error_without_update(self) -> None:
        self.vcs.fail_ls_remote = True

        check = self.sync.check_for_updates("acme-good")

        self.assertFalse(check.has_update)
        self.assertIn("could not read from remote", check.error)

    def test_missing_branch_reports_error(self) -> None:
        self.vcs.heads = {}

        check = self.sync.check_for_updates("acme-good")

        self.assertFalse(check.has_update)
        self.assertIn("not found", check.error)

    def test_check_all_only_covers_enabled(self) -> None:
        self.sync.update_source("acme-good", enabled=False)
        self.assertEqual(self.sync.check_all_for_updates(), [])


@unittest.skipUnless(shutil.which("git"), "git is not installed")
@unittest.skipIf(sys.platform.startswith("win"), "symlink tests need POSIX")
class TestGitCheckout(unittest.TestCase):
    def _git(self, cwd: Path, *args: str) -> None:
        subprocess.run(
            ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", "-c", "commit.gpgsign=false", *args],
            cwd=cwd,
            check=True,
            capture_output=True,
        )

    def test_sparse_checkout_follows_symlinked_subpath(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            tmp = Path(td)
            work = tmp / "work"
            _write(work, "skills/alpha/SKILL.md", "---\ndescription: Alpha\n---\n")
            _write(work, "README.md", "# repo\n")
            (work / ".claude").mkdir()
            os.symlink("../skills", work / ".claude" / "skills")
            self._git(work, "init")
            self._git(work, "add", "-A")
            self._git(work, "commit", "-m", "initial")
            self._git(work, "branch", "-M", "main")
            self._git(tmp, "clone", "--bare", str(work), str(tmp / "skills.git"))

            store = WarehouseStore(tmp / "wh", mover=StateMover(sleep=lambda s: None))
            sync = SourceSync(store, GitClient())
            sync.registry.upsert(
                SkillSource(
                    id="local-skills",
                    name="local skills",
                    repo_url=(tmp / "skills.git").as_uri(),
                    subpath=".claude/skills",
                )
            )

            result = sync.sync_source("local-skills")

            self.assertEqual(result.added, ("alpha",))
            self.assertEqual(store.get("alpha").description, "Alpha")
            self.assertTrue((sync.checkout_dir("local-skills") / ".claude" / "skills").is_symlink())
            self.assertEqual(sync.get_source("local-skills").status, "synced")


class TestParseSourceUrl(unittest.TestCase):
    def test_accepted_forms(self) -> None:
        cases = {
            "acme/skills": ("acme", "skills", None, None),
            "https://github.com/acme/skills": ("acme", "skills", None, None),
            "https://github.com/acme/skills.git": ("acme", "skills", None, None),
            "github.com/acme/skills/": ("acme", "skills", None, None),
            "git@github.com:acme/skills.git": ("acme", "skills", None, None),
            "https://github.com/acme/skills/tree/dev/.claude/skills": ("acme", "skills", "dev", ".claude/skills"),
        }
        for url, expected in cases.items():
            with self.subTest(url=url):
                p = parse_source_url(url)
                self.assertEqual((p.owner, p.repo, p.branch, p.subpath), expected)
        self.assertEqual(parse_source_url("acme/skills").source_id, "acme-skills")

    def test_rejected_forms(self) -> None:
        for url in ("", "not a url", "https://gitlab.com/acme/skills", "https://github.com/acme/skills/tree/main/../../etc"):
            with self.subTest(url=url):
                with self.assertRaises(SkillvaultError):
                    parse_source_url(url)


class TestRegistryAndLayout(unittest.TestCase):
    def test_legacy_registry_keys_are_read(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / ".sources.json"
            path.write_text(
                json.dumps(
                    [
                        {
                            "id": "acme-skills",
                            "name": "acme/skills",
                            "repoUrl": "https://github.com/acme/skills",
                            "skillsPath": "skills",
                            "lastCommitHash": "abc",
                            "skillCount": 4,
                        },
                        {"name": "no id"},
                    ]
                ),
                encoding="utf-8",
            )

            (source,) = SourceRegistry(path).load()

            self.assertEqual(source.subpath, "skills")
            self.assertEqual(source.last_revision, "abc")
            self.assertEqual(source.package_count, 4)
            self.assertEqual(source.branch, "main")
            self.assertTrue(source.enabled)

    def test_placeholder_target_of_subpath_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            checkout = Path(td)
            _write(checkout, "plugins/x/skills", "../../shared")
            _write(checkout, "escape", "../../outside")

            self.assertEqual(find_placeholder_targets(checkout, "plugins/x/skills"), ["shared"])
            self.assertEqual(find_placeholder_targets(checkout, "escape"), [])
            self.assertEqual(find_placeholder_targets(checkout, "."), [])

    @unittest.skipIf(sys.platform.startswith("win"), "symlink tests need POSIX")
    def test_dangling_symlink_is_a_placeholder(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            checkout = Path(td)
            (checkout / ".claude").mkdir()
            os.symlink("../skills", checkout / ".claude" / "skills")
            (checkout / "plugins").mkdir()
            os.symlink("../shared/tool", checkout / "plugins" / "tool")
            os.symlink("/etc", checkout / "plugins" / "absolute")

            self.assertEqual(find_placeholder_targets(checkout, ".claude/skills"), ["skills"])
            self.assertEqual(find_placeholder_targets(checkout, "plugins"), ["shared/tool"])

    def test_large_file_is_not_a_placeholder(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            checkout = Path(td)
            _write(checkout, "skills", "../" + "x" * 300)

            self.assertEqual(find_placeholder_targets(checkout, "skills"), [])

    def test_locate_falls_back_to_conventional_dirs(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            checkout = Path(td)
            _write(checkout, ".agent/skills/found/SKILL.md")

            found = locate_packages(checkout, "missing/dir", root_name="x")

            self.assertEqual([name for name, _ in found], ["found"])


if __name__ == "__main__":
    unittest.main()
