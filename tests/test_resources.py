"""Tests for the ephemeral directory and sandbox tool copies."""

import fcntl
import logging
import os
import stat
from unittest.mock import patch

import pytest

from prootbox.errors import CleanupError, SpawnError
from prootbox.launcher import EphemeralDirectory, materialize_tool, remove_tree


class TestEphemeralDirectory:
    """Tests for EphemeralDirectory."""

    def test_created_and_removed(self, tmp_path):
        workdir = EphemeralDirectory(prefix="rootfs", tmp_dir=tmp_path)

        with workdir as path:
            assert os.path.isdir(path)
            assert os.path.basename(path).startswith("rootfs")
            assert os.path.dirname(path) == str(tmp_path)
            (tmp_path / os.path.basename(path) / "file").write_text("x")

        assert not os.path.exists(path)

    def test_removed_on_error(self, tmp_path):
        workdir = EphemeralDirectory(tmp_dir=tmp_path)

        with pytest.raises(RuntimeError):
            with workdir as path:
                raise RuntimeError("boom")

        assert not os.path.exists(path)

    def test_keep(self, tmp_path):
        workdir = EphemeralDirectory(tmp_dir=tmp_path, keep=True)

        with workdir as path:
            pass

        assert os.path.isdir(path)

    def test_release_runs_once(self, tmp_path):
        workdir = EphemeralDirectory(tmp_dir=tmp_path)
        workdir.create()

        with patch("prootbox.launcher.workdir.remove_tree") as mock_remove:
            workdir.release()
            workdir.release()

        assert mock_remove.call_count == 1

    def test_cannot_create_twice(self, tmp_path):
        workdir = EphemeralDirectory(tmp_dir=tmp_path)
        workdir.create()
        try:
            with pytest.raises(RuntimeError):
                workdir.create()
        finally:
            workdir.release()

    def test_cleanup_failure_is_logged(self, tmp_path, caplog):
        workdir = EphemeralDirectory(tmp_dir=tmp_path)
        workdir.create()

        with patch(
            "prootbox.launcher.workdir.remove_tree",
            side_effect=CleanupError("Could not remove temporary directory"),
        ):
            with caplog.at_level(logging.WARNING, logger="prootbox.launcher.workdir"):
                workdir.release()

        assert "Could not remove temporary directory" in caplog.text
        remove_tree(workdir.path)

    def test_unique_names(self, tmp_path):
        first = EphemeralDirectory(tmp_dir=tmp_path)
        second = EphemeralDirectory(tmp_dir=tmp_path)
        try:
            assert first.create() != second.create()
        finally:
            first.release()
            second.release()


class TestRemoveTree:
    """Tests for remove_tree."""

    def test_read_only_tree(self, tmp_path):
        root = tmp_path / "tree"
        locked = root / "nix" / "store"
        locked.mkdir(parents=True)
        (locked / "file").write_text("x")
        os.chmod(locked, 0o555)
        os.chmod(root / "nix", 0o500)

        remove_tree(root)

        assert not root.exists()

    def test_does_not_chmod_through_links(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.chmod(outside, 0o750)
        root = tmp_path / "tree"
        sub = root / "sub"
        sub.mkdir(parents=True)
        os.symlink(outside, sub / "link")
        os.chmod(sub, 0o555)

        remove_tree(root)

        assert not root.exists()
        assert outside.is_dir()
        assert stat.S_IMODE(os.stat(outside).st_mode) == 0o750

    def test_missing_tree(self, tmp_path):
        remove_tree(tmp_path / "missing")


class TestMaterializeTool:
    """Tests for materialize_tool."""

    def test_tempfile(self, tmp_path):
        tool = materialize_tool(b"#!/bin/sh\nexit 0\n", storage="tempfile", tmp_dir=tmp_path)

        with tool:
            assert os.path.dirname(tool.path) == str(tmp_path)
            assert stat.S_IMODE(os.stat(tool.path).st_mode) == 0o700
            with open(tool.path, "rb") as f:
                assert f.read() == b"#!/bin/sh\nexit 0\n"
            assert tool.pass_fds == ()

        assert not os.path.exists(tool.path)

    def test_tempfile_names_unique(self, tmp_path):
        with materialize_tool(b"a", storage="tempfile", tmp_dir=tmp_path) as first:
            with materialize_tool(b"b", storage="tempfile", tmp_dir=tmp_path) as second:
                assert first.path != second.path

    def test_memfd(self):
        if not hasattr(os, "memfd_create"):
            pytest.skip("memfd_create not available")

        tool = materialize_tool(b"\x7fELF fake", storage="memfd")

        with tool:
            assert tool.pass_fds == (tool.fd,)
            assert tool.path == f"/proc/self/fd/{tool.fd}"
            assert os.pread(tool.fd, 64, 0) == b"\x7fELF fake"
            assert os.access(tool.path, os.X_OK)

        with pytest.raises(OSError):
            os.fstat(tool.fd)

    def test_memfd_inherited_handle_cannot_modify_tool(self):
        if not hasattr(os, "memfd_create"):
            pytest.skip("memfd_create not available")

        with materialize_tool(b"\x7fELF fake", storage="memfd") as tool:
            seals = fcntl.fcntl(tool.fd, fcntl.F_GET_SEALS)
            assert seals & fcntl.F_SEAL_WRITE
            assert seals & fcntl.F_SEAL_SEAL

            with pytest.raises(OSError):
                os.write(tool.fd, b"x")

            writer = os.open(tool.path, os.O_WRONLY)
            try:
                with pytest.raises(PermissionError):
                    os.write(writer, b"patched")
                with pytest.raises(PermissionError):
                    os.ftruncate(writer, 0)
            finally:
                os.close(writer)

            assert os.pread(tool.fd, 64, 0) == b"\x7fELF fake"

    def test_close_twice(self, tmp_path):
        tool = materialize_tool(b"x", storage="tempfile", tmp_dir=tmp_path)
        tool.close()
        tool.close()

    def test_empty_content(self):
        with pytest.raises(SpawnError, match="empty"):
            materialize_tool(b"")

    def test_unwritable_directory(self, tmp_path):
        with pytest.raises(SpawnError):
            materialize_tool(b"x", storage="tempfile", tmp_dir=tmp_path / "missing")
