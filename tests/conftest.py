"""Shared fixtures: synthetic rootfs images and a stand-in sandbox tool."""

import io
import tarfile

import pytest

from prootbox.config import LauncherConfig

# Mimics proot just enough for tests: drop "-b <bind>" and exec the target
FAKE_TOOL = b"""#!/bin/sh
if [ "$1" = "-b" ]; then
    shift 2
fi
exec "$@"
"""

SCRIPTS = {
    "bin/true": b"#!/bin/sh\nexit 0\n",
    "bin/false": b"#!/bin/sh\nexit 1\n",
    "bin/args": b"#!/bin/sh\nprintf '%s\\n' \"$@\"\n",
    "bin/showpath": b"#!/bin/sh\nprintf '%s\\n' \"$PATH\"\n",
    "bin/wait": b"#!/bin/sh\nexec sleep 30\n",
    "bin/pidwait": b"#!/bin/sh\necho $$ > \"$1\"\nexec sleep 30\n",
    "bin/stubborn": b"#!/bin/sh\ntrap '' TERM\n: > \"$1\"\nexec sleep 30\n",
}


def file_entry(name, data=b"", mode=0o644):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    return info, data


def dir_entry(name, mode=0o755):
    info = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = mode
    return info, None


def symlink_entry(name, linkname):
    info = tarfile.TarInfo(name)
    info.type = tarfile.SYMTYPE
    info.linkname = linkname
    info.mode = 0o777
    return info, None


def special_entry(name, entry_type, linkname=""):
    info = tarfile.TarInfo(name)
    info.type = entry_type
    info.linkname = linkname
    return info, None


def tar_bytes(entries, compression=""):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=f"w:{compression}") as tar:
        for info, data in entries:
            tar.addfile(info, io.BytesIO(data) if data is not None else None)
    return buffer.getvalue()


def image_bytes(layer_entries, layer_name="3f2a9c/layer.tar", extra=()):
    """Build a docker-save style export: gzip(tar(manifest, <id>/layer.tar))."""
    outer = [
        file_entry("manifest.json", b'[{"Layers": ["%s"]}]' % layer_name.encode()),
        *extra,
        file_entry(layer_name, tar_bytes(layer_entries)),
    ]
    return tar_bytes(outer, compression="gz")


class Entries:
    file = staticmethod(file_entry)
    dir = staticmethod(dir_entry)
    symlink = staticmethod(symlink_entry)
    special = staticmethod(special_entry)


@pytest.fixture
def entries():
    """Tar entry builders."""
    return Entries


@pytest.fixture
def make_image():
    """Build a gzip-compressed image export around a list of layer entries."""
    return image_bytes


@pytest.fixture
def make_tar():
    """Build a plain (or compressed) tar stream from entries."""
    return tar_bytes


@pytest.fixture
def rootfs_image():
    """A minimal rootfs with a few shell-script programs."""
    layer = [dir_entry("bin"), dir_entry("nix"), dir_entry("nix/store")]
    layer += [file_entry(name, data, mode=0o755) for name, data in SCRIPTS.items()]
    return image_bytes(layer)


@pytest.fixture
def fake_tool():
    """Shell script standing in for the proot binary."""
    return FAKE_TOOL


@pytest.fixture
def launcher_config(tmp_path):
    """Launcher settings that keep every run below tmp_path."""
    work = tmp_path / "work"
    work.mkdir()
    return LauncherConfig(
        grace_seconds=1.0,
        tmp_dir=work,
        tool_storage="tempfile",
    )
