"""
Tests for the command line entry point.
"""
import json
from unittest.mock import patch

from toolalign.scripts import start_alignment


def run_main(*args):
    with patch('sys.argv', ['toolhead-align', *args]):
        return start_alignment.main()


def test_validate_only(tmp_path, capsys):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({'printer': {'url': 'http://voron.local'}, 'vision': {'strategy': 'hough'}}))

    assert run_main('--config', str(path), '--validate-only') == 0

    output = capsys.readouterr().out
    assert "http://voron.local" in output
    assert "hough" in output


def test_missing_config(tmp_path, capsys):
    assert run_main('--config', str(tmp_path / "missing.json")) == 1
    assert "not found" in capsys.readouterr().out


def test_invalid_config(tmp_path, capsys):
    path = tmp_path / "config.json"
    path.write_text("{not json")

    assert run_main('--config', str(path), '--validate-only') == 1
    assert "Error loading system configuration" in capsys.readouterr().out


def test_failed_start(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({'camera': {'source_type': 'image_folder',
                                           'image_directory': str(tmp_path / "none")}}))

    with patch.object(start_alignment, 'AlignmentSystem') as system_cls:
        system_cls.return_value.start_system.return_value = False
        assert run_main('--config', str(path)) == 1
