"""Tests for the command line entry point."""

import json

import pytest

from peerflow.cli import build_parser, main
from peerflow.config import get_settings
from tests.factories import make_template_data


class TestValidateTemplates:
    def test_shipped_templates_are_valid(self):
        assert main(["validate-templates", "--template-dir", str(get_settings().template_dir)]) == 0

    def test_invalid_rank_table_fails(self, tmp_path):
        data = make_template_data(rank_to_tokens=[4, 5, 6])
        (tmp_path / "bad.json").write_text(json.dumps(data))
        assert main(["validate-templates", "--template-dir", str(tmp_path)]) == 1

    def test_malformed_document_fails(self, tmp_path):
        (tmp_path / "broken.json").write_text(json.dumps({"id": "broken_v1"}))
        assert main(["validate-templates", "--template-dir", str(tmp_path)]) == 1


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_serve_defaults(self):
        args = build_parser().parse_args(["serve"])
        assert args.host == "127.0.0.1"
        assert args.port == 8000
        assert args.reload is False
