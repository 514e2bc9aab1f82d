"""
Vigil Liveness Engine: Launcher Tests
=====================================
Argument handling of start_vigil without opening a camera.
"""

from unittest.mock import patch

import start_vigil
from conftest import run_async
from vigil_config import merge_config


def test_source_digits_select_webcam_index():
    args = start_vigil.build_parser().parse_args(["--source", "1"])
    config = start_vigil.apply_args(merge_config(), args)
    assert config["camera"]["camera_id"] == 1


def test_source_path_and_overrides():
    args = start_vigil.build_parser().parse_args([
        "--source", "clip.mp4",
        "--api-url", "https://bio.example.com",
        "--analyzer", "pkg.mod:Analyzer",
        "--timeout", "12",
        "--challenge", "head-turn",
    ])
    config = start_vigil.apply_args(merge_config(), args)
    assert config["camera"]["camera_id"] == "clip.mp4"
    assert config["api"]["base_url"] == "https://bio.example.com"
    assert config["analyzer"]["path"] == "pkg.mod:Analyzer"
    assert config["session"]["timeout_s"] == 12.0
    assert args.challenge == "head-turn"


def test_missing_analyzer_exits_with_setup_error():
    args = start_vigil.build_parser().parse_args([])
    with patch("start_vigil.load_config", return_value=merge_config()):
        assert run_async(start_vigil.run(args)) == 2


def test_register_requires_user_id():
    args = start_vigil.build_parser().parse_args(["--analyzer", "pkg.mod:A", "--mode", "register"])
    with patch("start_vigil.load_config", return_value=merge_config()):
        assert run_async(start_vigil.run(args)) == 2
