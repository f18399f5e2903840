"""
Unit tests for the command-line interface.
"""

import pytest
from pathlib import Path
import sys
from click.testing import CliRunner
from PIL import Image

# Add package root and cli directory to path
ROOT = Path(__file__).parent.parent.parent
sys.path.insert(0, str(ROOT))
sys.path.insert(0, str(ROOT / "cli"))

from forge import cli, parse_pair
from presetforge.core.download import DirectoryDelivery
from presetforge.utils.config import Config


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def image_path(tmp_path):
    path = tmp_path / "input.png"
    Image.new('RGB', (120, 80), (10, 200, 90)).save(path)
    return path


class TestCli:
    def test_presets_listing(self, runner):
        result = runner.invoke(cli, ['--quiet', 'presets', '--category', 'youtube'])

        assert result.exit_code == 0
        assert "youtube-thumbnail" in result.output
        assert "instagram" not in result.output

    def test_process_inline(self, runner, image_path, tmp_path):
        out = tmp_path / "out" / "result.jpg"

        result = runner.invoke(cli, ['--quiet', 'process', str(image_path), '--out', str(out),
                                     '--width', '60', '--inline'])

        assert result.exit_code == 0, result.output
        with Image.open(out) as img:
            assert img.size == (60, 40)
            assert img.format == 'JPEG'

    def test_process_out_of_bounds_crop(self, runner, image_path, tmp_path):
        result = runner.invoke(cli, ['--quiet', 'process', str(image_path),
                                     '--out', str(tmp_path / "x.png"),
                                     '--crop=-10,0,100,100', '--inline'])

        assert result.exit_code == 1
        assert "CropOutOfBoundsError" in result.output
        assert not (tmp_path / "x.png").exists()

    def test_smart_crop_json(self, runner, image_path):
        result = runner.invoke(cli, ['--quiet', 'smart-crop', str(image_path), '--aspect', '1:1', '--json'])

        assert result.exit_code == 0
        assert '"confidence": 0.5' in result.output
        assert '"width": 80' in result.output

    def test_parse_pair(self):
        assert parse_pair("16:9", ":x") == (16, 9)
        assert parse_pair("1080x1350", "x") == (1080, 1350)


class TestBatchCommand:
    """Test batch delivery to a directory or an archive."""

    @pytest.fixture
    def images_dir(self, tmp_path):
        images = tmp_path / "images"
        images.mkdir()
        Image.new('RGB', (60, 40), (200, 30, 30)).save(images / "red.png")
        return images

    def test_writes_directory(self, runner, images_dir, tmp_path):
        out = tmp_path / "out"

        result = runner.invoke(cli, ['--quiet', 'batch', '--images-dir', str(images_dir),
                                     '--size', '20x20', '--workers', '1', '--out', str(out)])

        assert result.exit_code == 0, result.output
        assert [path.name for path in out.iterdir()] == ["red-20x20.png"]

    def test_oversize_archive_falls_back_to_directory(self, runner, images_dir, tmp_path):
        config_path = tmp_path / "config.json"
        Config(max_archive_bytes=10).save(config_path)
        out = tmp_path / "out"
        zip_path = tmp_path / "all.zip"

        result = runner.invoke(cli, ['--quiet', '--config', str(config_path), 'batch',
                                     '--images-dir', str(images_dir), '--size', '20x20', '--workers', '1',
                                     '--zip', str(zip_path), '--out', str(out)])

        assert result.exit_code == 0, result.output
        assert "FAIL" in result.output
        assert not zip_path.exists()
        assert len(list(out.iterdir())) == 1

    def test_delivery_failure_reported(self, runner, images_dir, tmp_path, monkeypatch):
        def refuse(self, filename, reference, registry):
            raise OSError("read-only file system")

        monkeypatch.setattr(DirectoryDelivery, 'deliver', refuse)

        result = runner.invoke(cli, ['--quiet', 'batch', '--images-dir', str(images_dir),
                                     '--size', '20x20', '--workers', '1', '--out', str(tmp_path / "out")])

        assert result.exit_code == 1
        assert "FAIL" in result.output
        assert "1 of 1" in result.output
