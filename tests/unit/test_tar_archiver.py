# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for tar archive creation.
"""
import os
import socket
import stat
import sys
import tarfile
import tempfile

import pytest

from dockpack.ARCHIVE.tar_archiver import (
    ArchiveCompression,
    LongFileMode,
    TarArchiver,
    parse_mode,
)
from dockpack.errors import ArchiveError


@pytest.fixture
def tree(tmp_path):
    root = tmp_path / "tree"
    (root / "bin").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "bin" / "run.sh").write_text("#!/bin/sh\necho hi\n")
    (root / "app.jar").write_bytes(b"\x00\x01jar")
    return root


def _extract(archive, dest):
    with tarfile.open(archive) as tar:
        tar.extractall(dest)


def _files(root):
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        rel = os.path.relpath(dirpath, root)
        for d in dirnames:
            result[os.path.normpath(os.path.join(rel, d))] = None
        for f in filenames:
            path = os.path.join(dirpath, f)
            with open(path, "rb") as fh:
                result[os.path.normpath(os.path.join(rel, f))] = fh.read()
    return result


@pytest.mark.parametrize("compression", list(ArchiveCompression))
def test_archive_extract_reproduces_tree(tree, tmp_path, compression):
    archive = TarArchiver().create_archive(tree, tmp_path / f"out.{compression.file_suffix}", compression)
    out = tmp_path / "extracted"
    _extract(archive, out)
    assert _files(out) == _files(tree)


def test_entries_are_owned_by_root(tree, tmp_path):
    archive = TarArchiver().create_archive(tree, tmp_path / "out.tar")
    with tarfile.open(archive) as tar:
        for member in tar.getmembers():
            assert member.uid == 0 and member.gid == 0
            assert member.uname == "" and member.gname == ""


def test_empty_directories_are_kept(tree, tmp_path):
    archive = TarArchiver().create_archive(tree, tmp_path / "out.tar")
    with tarfile.open(archive) as tar:
        assert tar.getmember("empty").isdir()


def test_entries_written_in_given_order(tree, tmp_path):
    files = ["app.jar", "bin/run.sh", "bin"]
    archive = TarArchiver().create_tarball(tmp_path / "out.tar", tree, files)
    with tarfile.open(archive) as tar:
        assert tar.getnames() == files


def test_file_modes_override_permissions(tree, tmp_path):
    archive = TarArchiver().create_archive(
        tree, tmp_path / "out.tar", file_modes={"bin/run.sh": "0755", "bin": "040111"}
    )
    with tarfile.open(archive) as tar:
        assert tar.getmember("bin/run.sh").mode == 0o755
        assert tar.getmember("bin").mode == 0o111


def test_gzip_output_is_reproducible(tree, tmp_path):
    first = TarArchiver().create_archive(tree, tmp_path / "a.tar.gz", "gzip")
    second = TarArchiver().create_archive(tree, tmp_path / "b.tar.gz", "gzip")
    assert first.read_bytes() == second.read_bytes()


def test_include_exclude_and_customizer(tree, tmp_path):
    extra = tmp_path / "extra.txt"
    extra.write_text("extra")

    def rename(info):
        info.name = "renamed/" + info.name
        return info

    archiver = (
        TarArchiver()
        .include_file(extra, "/opt/extra.txt")
        .exclude_file("app.jar")
        .add_entry_customizer(rename)
    )
    archive = archiver.create_archive(tree, tmp_path / "out.tar")
    with tarfile.open(archive) as tar:
        names = tar.getnames()
    assert "renamed/opt/extra.txt" in names
    assert "renamed/app.jar" not in names


def test_customizer_can_drop_entries(tree, tmp_path):
    archiver = TarArchiver().add_entry_customizer(lambda info: None if info.name.endswith(".jar") else info)
    archive = archiver.create_archive(tree, tmp_path / "out.tar")
    with tarfile.open(archive) as tar:
        assert "app.jar" not in tar.getnames()


def test_long_names_use_pax_by_default(tmp_path):
    root = tmp_path / "tree"
    deep = root / ("d" * 60) / ("e" * 60)
    deep.mkdir(parents=True)
    (deep / "file.txt").write_text("x")
    archive = TarArchiver().create_archive(root, tmp_path / "out.tar")
    with tarfile.open(archive) as tar:
        assert f"{'d' * 60}/{'e' * 60}/file.txt" in tar.getnames()


def test_long_names_error_mode(tmp_path):
    root = tmp_path / "tree"
    root.mkdir()
    (root / ("f" * 120)).write_text("x")
    output = tmp_path / "out.tar"
    with pytest.raises(ArchiveError):
        TarArchiver(LongFileMode.ERROR).create_archive(root, output)
    assert not output.exists()
    assert [p.name for p in tmp_path.iterdir()] == ["tree"]


def test_long_names_truncate_mode(tmp_path):
    root = tmp_path / "tree"
    root.mkdir()
    (root / ("f" * 120)).write_text("x")
    archive = TarArchiver(LongFileMode.TRUNCATE).create_archive(root, tmp_path / "out.tar")
    with tarfile.open(archive) as tar:
        assert tar.getnames() == ["f" * 100]


def test_failure_keeps_existing_output(tmp_path):
    output = tmp_path / "out.tar"
    output.write_bytes(b"previous")
    with pytest.raises(ArchiveError):
        TarArchiver().create_tarball(output, tmp_path, [tmp_path / "missing.txt"])
    assert output.read_bytes() == b"previous"


def test_leftover_temp_file_removed_on_any_error(tree, tmp_path):
    def explode(info):
        raise RuntimeError("customizer failed")

    out = tmp_path / "out"
    out.mkdir()
    with pytest.raises(RuntimeError):
        TarArchiver().add_entry_customizer(explode).create_archive(tree, out / "ctx.tar")
    assert os.listdir(out) == []


@pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="needs unix sockets")
def test_special_files_are_skipped(caplog):
    # short path, unix socket names are length limited
    with tempfile.TemporaryDirectory() as tmp:
        base = os.path.join(tmp, "ctx")
        os.mkdir(base)
        with open(os.path.join(base, "app.jar"), "w") as f:
            f.write("jar")
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            server.bind(os.path.join(base, "s.sock"))
            archive = TarArchiver().create_archive(base, os.path.join(tmp, "ctx.tar"))
        finally:
            server.close()
        with tarfile.open(archive) as tar:
            assert tar.getnames() == ["app.jar"]
        assert sorted(os.listdir(tmp)) == ["ctx", "ctx.tar"]
    assert "s.sock" in caplog.text


@pytest.mark.skipif(sys.platform == "win32", reason="posix permissions")
def test_archive_is_readable_by_others(tree, tmp_path):
    archive = TarArchiver().create_archive(tree, tmp_path / "out.tar")
    assert stat.S_IMODE(os.stat(archive).st_mode) == 0o644


def test_parse_mode():
    assert parse_mode("0644") == 0o644
    assert parse_mode("040755") == 0o755
    with pytest.raises(ArchiveError):
        parse_mode("rwx")


def test_compression_aliases():
    assert ArchiveCompression.parse("tgz") is ArchiveCompression.GZIP
    assert ArchiveCompression.parse(None) is ArchiveCompression.NONE
    assert ArchiveCompression.BZIP2.file_suffix == "tar.bz2"
    with pytest.raises(ArchiveError):
        ArchiveCompression.parse("zip")
