"""
Unit tests for the shadow snapshot history.
"""

import os
import stat
import pytest
from structlog.testing import capture_logs

from mcp_checkpoint.checkpoint.snapshot import (
    SnapshotStore,
    EMPTY_TREE_REF,
    SYMLINK_MODE,
    EXECUTABLE_MODE,
    REGULAR_MODE,
)
from mcp_checkpoint.utils.errors import (
    SnapshotNotFoundError,
    InvalidWorkspaceError,
)


async def collect(aiter):
    return [item async for item in aiter]


class TestSnapshotStoreInit:
    """Test chain creation."""

    async def test_init_creates_layout(self, snapshot_store, storage_root, identity):
        await snapshot_store.init()
        base = storage_root / "checkpoints" / identity.identity_hash
        assert (base / "cas" / "objects").is_dir()
        assert await snapshot_store.read_head() is None

    async def test_init_is_idempotent(self, snapshot_store):
        await snapshot_store.init()
        await snapshot_store.init()
        assert await snapshot_store.log() == []

    async def test_vanished_workspace(self, snapshot_store, workspace):
        workspace.rmdir()
        with pytest.raises(InvalidWorkspaceError):
            await snapshot_store.init()


class TestCreateSnapshot:
    """Test staging and committing."""

    async def test_snapshot_advances_head(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello"})

        ref = await snapshot_store.create_snapshot("first")

        assert len(ref) == 64
        assert await snapshot_store.read_head() == ref
        snapshot = await snapshot_store.get_snapshot(ref)
        assert snapshot.parent_ref is None
        assert snapshot.message == "first"
        assert list(snapshot.tree) == ["a.txt"]
        assert snapshot.tree["a.txt"].size == 5

    async def test_empty_snapshot_gets_new_ref(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello"})
        first = await snapshot_store.create_snapshot()
        second = await snapshot_store.create_snapshot()

        assert first != second
        assert (await snapshot_store.get_snapshot(second)).parent_ref == first
        assert await snapshot_store.diff_count(first, second) == 0
        assert await snapshot_store.log() == [second, first]

    async def test_snapshot_of_empty_workspace(self, snapshot_store):
        ref = await snapshot_store.create_snapshot()
        assert (await snapshot_store.get_snapshot(ref)).tree == {}

    async def test_excluded_files_are_not_staged(self, snapshot_store, workspace, make_files):
        make_files(workspace, {
            "src/app.py": "print('hi')",
            "node_modules/pkg/index.js": "module.exports = 1",
            "debug.log": "noise",
            ".git/config": "[core]",
            "metadata.json": "[]",
            ".DS_Store": "",
        })

        ref = await snapshot_store.create_snapshot()
        assert list((await snapshot_store.get_snapshot(ref)).tree) == ["src/app.py"]

    async def test_identical_trees_share_entries(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "same", "b.txt": "same"})
        ref = await snapshot_store.create_snapshot()
        tree = (await snapshot_store.get_snapshot(ref)).tree
        assert tree["a.txt"].blob == tree["b.txt"].blob

    async def test_modes_are_recorded(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"run.sh": "#!/bin/sh\n", "notes.txt": "x"})
        os.chmod(workspace / "run.sh", 0o755)
        os.chmod(workspace / "notes.txt", 0o640)

        tree = (await snapshot_store.get_snapshot(await snapshot_store.create_snapshot())).tree
        assert tree["run.sh"].mode == EXECUTABLE_MODE
        assert tree["notes.txt"].mode == REGULAR_MODE

    async def test_symlinks_are_stored_as_links(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"real.txt": "target"})
        os.symlink("real.txt", workspace / "link.txt")

        tree = (await snapshot_store.get_snapshot(await snapshot_store.create_snapshot())).tree
        assert tree["link.txt"].mode == SYMLINK_MODE
        assert tree["link.txt"].size == len("real.txt")

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can read any file")
    async def test_unreadable_file_is_carried_forward(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"secret.txt": "v1", "open.txt": "v1"})
        first = await snapshot_store.create_snapshot()

        (workspace / "open.txt").write_text("v2")
        os.chmod(workspace / "secret.txt", 0)
        try:
            with capture_logs() as logs:
                second = await snapshot_store.create_snapshot()
        finally:
            os.chmod(workspace / "secret.txt", 0o644)

        before = (await snapshot_store.get_snapshot(first)).tree
        after = (await snapshot_store.get_snapshot(second)).tree
        assert after["secret.txt"] == before["secret.txt"]
        assert after["open.txt"] != before["open.txt"]
        assert any(log["event"] == "staging_partial_failure" for log in logs)


class TestDiff:
    """Test diff and diff_count."""

    async def test_diff_between_snapshots(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello", "gone.txt": "bye"})
        first = await snapshot_store.create_snapshot()

        make_files(workspace, {"a.txt": "world", "b.txt": "new"})
        (workspace / "gone.txt").unlink()
        second = await snapshot_store.create_snapshot()

        diffs = await collect(snapshot_store.diff(first, second))
        assert [d.relative_path for d in diffs] == ["a.txt", "b.txt", "gone.txt"]

        a, b, gone = diffs
        assert (a.before, a.after) == (b"hello", b"world")
        assert a.existed_before and a.exists_after
        assert (b.before, b.existed_before) == (b"", False)
        assert (gone.after, gone.exists_after) == (b"", False)
        assert a.absolute_path == workspace / "a.txt"

        assert await snapshot_store.diff_count(first, second) == 3

    async def test_diff_against_live_tree_sees_untracked_files(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello"})
        ref = await snapshot_store.create_snapshot()

        make_files(workspace, {"untracked.txt": "fresh"})
        diffs = await collect(snapshot_store.diff(ref))

        assert [d.relative_path for d in diffs] == ["untracked.txt"]
        assert diffs[0].after == b"fresh"
        assert await snapshot_store.diff_count(ref) == 1
        assert await snapshot_store.read_head() == ref

    async def test_diff_from_empty_tree(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"one.txt": "1", "two/three.txt": "3"})
        ref = await snapshot_store.create_snapshot()

        assert await snapshot_store.diff_count(EMPTY_TREE_REF, ref) == 2
        diffs = await collect(snapshot_store.diff(EMPTY_TREE_REF, ref))
        assert all(not d.existed_before for d in diffs)

    async def test_mode_change_counts(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"tool.sh": "echo"})
        os.chmod(workspace / "tool.sh", 0o644)
        first = await snapshot_store.create_snapshot()

        os.chmod(workspace / "tool.sh", 0o755)
        second = await snapshot_store.create_snapshot()

        assert await snapshot_store.diff_count(first, second) == 1

    async def test_diff_is_lazy(self, snapshot_store, workspace, make_files):
        make_files(workspace, {f"f{i}.txt": str(i) for i in range(5)})
        ref = await snapshot_store.create_snapshot()

        stream = snapshot_store.diff(EMPTY_TREE_REF, ref)
        first = await stream.__anext__()
        await stream.aclose()
        assert first.relative_path == "f0.txt"

    async def test_unknown_ref(self, snapshot_store):
        await snapshot_store.init()
        with pytest.raises(SnapshotNotFoundError):
            await snapshot_store.get_snapshot("f" * 64)
        with pytest.raises(SnapshotNotFoundError):
            await snapshot_store.get_snapshot("../../etc/passwd")


class TestResetTo:
    """Test hard reset of the live tree."""

    async def test_reset_restores_and_deletes(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello", "keep/x.txt": "x"})
        first = await snapshot_store.create_snapshot()

        make_files(workspace, {"a.txt": "world", "new/deep/b.txt": "new"})
        (workspace / "keep" / "x.txt").unlink()
        await snapshot_store.create_snapshot()

        await snapshot_store.reset_to(first)

        assert (workspace / "a.txt").read_text() == "hello"
        assert (workspace / "keep" / "x.txt").read_text() == "x"
        assert not (workspace / "new").exists()
        assert await snapshot_store.read_head() == first

    async def test_reset_removes_uncommitted_eligible_files(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello"})
        ref = await snapshot_store.create_snapshot()

        make_files(workspace, {"scratch.txt": "temp", "server.log": "excluded"})
        await snapshot_store.reset_to(ref)

        assert not (workspace / "scratch.txt").exists()
        assert (workspace / "server.log").read_text() == "excluded"

    async def test_reset_leaves_foreign_vcs_alone(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello"})
        ref = await snapshot_store.create_snapshot()

        make_files(workspace, {".git/HEAD": "ref: refs/heads/main"})
        await snapshot_store.reset_to(ref)

        assert (workspace / ".git" / "HEAD").read_text() == "ref: refs/heads/main"

    async def test_reset_ignores_current_exclusions_for_target_entries(
        self, identity, storage_root, workspace, temp_dir, make_files
    ):
        make_files(workspace, {"notes.txt": "tracked"})
        store = SnapshotStore(identity, storage_root)
        ref = await store.create_snapshot()

        exclusions = temp_dir / "exclusions.txt"
        exclusions.write_text("notes.txt\n")
        (workspace / "notes.txt").unlink()

        strict_store = SnapshotStore(identity, storage_root, exclusions_file=exclusions)
        await strict_store.reset_to(ref)

        assert (workspace / "notes.txt").read_text() == "tracked"

    async def test_reset_restores_modes_and_symlinks(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"run.sh": "#!/bin/sh\n", "real.txt": "target"})
        os.chmod(workspace / "run.sh", 0o755)
        os.symlink("real.txt", workspace / "link.txt")
        ref = await snapshot_store.create_snapshot()

        (workspace / "link.txt").unlink()
        (workspace / "link.txt").write_text("now a file")
        os.chmod(workspace / "run.sh", 0o644)

        await snapshot_store.reset_to(ref)

        assert os.path.islink(workspace / "link.txt")
        assert os.readlink(workspace / "link.txt") == "real.txt"
        assert stat.S_IMODE(os.stat(workspace / "run.sh").st_mode) & 0o111

    async def test_reset_is_idempotent(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello"})
        ref = await snapshot_store.create_snapshot()
        make_files(workspace, {"a.txt": "changed", "b.txt": "extra"})

        await snapshot_store.reset_to(ref)
        await snapshot_store.reset_to(ref)

        assert sorted(p.name for p in workspace.iterdir()) == ["a.txt"]
        assert await snapshot_store.diff_count(ref) == 0

    async def test_reset_to_unknown_ref_changes_nothing(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello"})
        await snapshot_store.create_snapshot()

        with pytest.raises(SnapshotNotFoundError):
            await snapshot_store.reset_to("e" * 64)
        assert (workspace / "a.txt").read_text() == "hello"

    async def test_reset_replaces_directory_standing_on_a_file(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"x": "was a file", "a.txt": "hello"})
        ref = await snapshot_store.create_snapshot()

        (workspace / "x").unlink()
        make_files(workspace, {"x/debug.log": "excluded", "new.txt": "new"})
        await snapshot_store.create_snapshot()

        await snapshot_store.reset_to(ref)

        assert (workspace / "x").read_text() == "was a file"
        assert (workspace / "a.txt").read_text() == "hello"
        assert not (workspace / "new.txt").exists()
        assert await snapshot_store.diff_count(ref) == 0

    async def test_reset_replaces_file_standing_on_a_directory(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"pkg/mod.txt": "module"})
        ref = await snapshot_store.create_snapshot()

        (workspace / "pkg" / "mod.txt").unlink()
        (workspace / "pkg").rmdir()
        make_files(workspace, {"pkg": "now a file"})

        await snapshot_store.reset_to(ref)

        assert (workspace / "pkg" / "mod.txt").read_text() == "module"

    async def test_reset_leaves_special_files_alone(self, snapshot_store, workspace, make_files):
        make_files(workspace, {"a.txt": "hello"})
        os.mkfifo(workspace / "pipe")
        ref = await snapshot_store.create_snapshot()

        assert "pipe" not in (await snapshot_store.get_snapshot(ref)).tree

        make_files(workspace, {"a.txt": "changed"})
        await snapshot_store.reset_to(ref)

        assert stat.S_ISFIFO(os.lstat(workspace / "pipe").st_mode)
        assert (workspace / "a.txt").read_text() == "hello"


class TestLog:
    """Test walking the chain."""

    async def test_log_is_newest_first_and_bounded(self, snapshot_store, workspace, make_files):
        refs = []
        for i in range(4):
            make_files(workspace, {"a.txt": str(i)})
            refs.append(await snapshot_store.create_snapshot())

        assert await snapshot_store.log() == list(reversed(refs))
        assert await snapshot_store.log(max_count=2) == [refs[3], refs[2]]
