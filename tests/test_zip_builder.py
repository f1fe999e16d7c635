"""Tests for archive assembly (archive/zip_builder.py)."""
import re
import zipfile

import pytest

from topicvault.archive.markdown import generate_file_name
from topicvault.archive.zip_builder import ZipOptions, build_export_zip, generate_zip_file_name

from conftest import make_topic, make_topics


def _staged_images(images_dir, names):
    images_dir.mkdir()
    for name in names:
        (images_dir / name).write_bytes(b"img-" + name.encode())


class TestBuildExportZip:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_archive_has_readme_posts_and_images(self, tmp_path):
        topics = make_topics(12)
        images_dir = tmp_path / "images"
        _staged_images(images_dir, ["t000_1.png", "t003_1.jpg", "t003_2.jpg"])
        (images_dir / "t004_1.jpg.part").write_bytes(b"half")
        progress = []

        result = await build_export_zip(topics, ZipOptions(
            output_path = tmp_path / "out" / "export.zip",
            group_name  = "Readers",
            images_dir  = images_dir,
            on_progress = progress.append,
        ))

        assert result.success
        assert result.posts_count == 12
        assert result.images_count == 3
        assert result.file_size > 0

        with zipfile.ZipFile(result.file_path) as zf:
            names = zf.namelist()
            assert names[0] == "README.md"
            assert sorted(n for n in names if n.startswith("posts/")) == sorted(
                f"posts/{generate_file_name(t)}" for t in topics
            )
            assert sorted(n for n in names if n.startswith("images/")) == [
                "images/t000_1.png", "images/t003_1.jpg", "images/t003_2.jpg",
            ]
            assert zf.read("images/t003_2.jpg") == b"img-t003_2.jpg"
            assert zf.getinfo("README.md").compress_type == zipfile.ZIP_DEFLATED
            assert "# Readers Export" in zf.read("README.md").decode()

        stages = [p.stage for p in progress]
        assert stages[0] == "converting"
        assert stages[-1] == "finalizing"
        assert [p.current for p in progress if p.stage == "adding_posts"] == [10, 12]

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_without_images_dir(self, tmp_path):
        result = await build_export_zip(make_topics(2), ZipOptions(
            output_path    = tmp_path / "export.zip",
            group_name     = "Readers",
            include_images = False,
        ))

        assert result.success
        assert result.images_count == 0
        with zipfile.ZipFile(result.file_path) as zf:
            assert len(zf.namelist()) == 3

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_unwritable_destination_fails_cleanly(self, tmp_path):
        blocker = tmp_path / "taken"
        blocker.mkdir()

        result = await build_export_zip([make_topic(0)], ZipOptions(
            output_path = blocker,
            group_name  = "Readers",
        ))

        assert not result.success
        assert result.error
        assert blocker.is_dir()


class TestZipFileName:

    @pytest.mark.unit
    def test_with_range_and_id(self):
        name = generate_zip_file_name(
            "My Group/2024",
            "2024-01-01T00:00:00.000+0800",
            "2024-06-30T23:59:59.999+0800",
            "abcdef1234567890",
        )
        assert re.fullmatch(r"My_Group2024_2024-01-01_2024-06-30_\d{4}-\d{2}-\d{2}_abcdef12\.zip", name)

    @pytest.mark.unit
    def test_minimal(self):
        name = generate_zip_file_name("???")
        assert re.fullmatch(r"export_\d{4}-\d{2}-\d{2}\.zip", name)


class TestPartialArchive:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_failure_while_adding_images_removes_archive(self, tmp_path, monkeypatch):
        images_dir = tmp_path / "images"
        _staged_images(images_dir, ["t000_1.png"])

        def disk_full(self, *args, **kwargs):
            raise OSError("disk full")

        monkeypatch.setattr(zipfile.ZipFile, "write", disk_full)
        output = tmp_path / "export.zip"

        result = await build_export_zip(make_topics(3), ZipOptions(
            output_path = output,
            group_name  = "Readers",
            images_dir  = images_dir,
        ))

        assert not result.success
        assert result.error == "disk full"
        assert not output.exists()
