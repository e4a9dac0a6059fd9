"""Tests for the command-line entry point."""

import json
import os
import time

import pytest

from visual_matcher.catalog import CatalogEntry, CatalogStore
from visual_matcher.cli import build_parser, main

from conftest import write_image


class TestCli:

    def test_requires_command(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_cleanup_command(self, tmp_path, capsys):
        uploads = tmp_path / "uploads"
        uploads.mkdir()
        stale = uploads / "stale.jpg"
        stale.write_bytes(b"x")
        old = time.time() - 10 * 86400
        os.utime(stale, (old, old))

        code = main(["--store", str(tmp_path / "catalog.json"),
                     "cleanup", "--upload-dir", str(uploads)])

        assert code == 0
        output = json.loads(capsys.readouterr().out)
        assert output["deleted"] == 1
        assert not stale.exists()

    def test_reconcile_missing_directory(self, tmp_path, capsys):
        store_path = str(tmp_path / "catalog.json")
        CatalogStore(store_path).insert(CatalogEntry(name="a", image_ref="products/a.jpg"))

        code = main(["--store", store_path,
                     "reconcile", "--image-dir", str(tmp_path / "missing")])

        assert code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "skipped"
        assert CatalogStore(store_path).count() == 1

    def test_search_without_model_reports_error(self, tmp_path, capsys, monkeypatch):
        from visual_matcher import embedding

        monkeypatch.setattr(embedding, "EMBEDDING_MODEL_PATH", str(tmp_path / "none.onnx"))
        monkeypatch.setattr(embedding, "_default_provider", None)
        query = write_image(tmp_path, "q.png")

        code = main(["--store", str(tmp_path / "catalog.json"), "search", query])

        assert code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["success"] is False

    def test_corrupt_store_reports_error(self, tmp_path, capsys):
        store_path = tmp_path / "catalog.json"
        store_path.write_text("{not json")

        code = main(["--store", str(store_path),
                     "cleanup", "--upload-dir", str(tmp_path / "uploads")])

        assert code == 1
        output = json.loads(capsys.readouterr().out)
        assert output["success"] is False
        assert "catalog.json" in output["error"]

    def test_store_record_missing_image_reports_error(self, tmp_path, capsys):
        store_path = tmp_path / "catalog.json"
        store_path.write_text(json.dumps({"version": 1, "entries": [{"id": 1, "name": "a"}]}))

        code = main(["--store", str(store_path),
                     "cleanup", "--upload-dir", str(tmp_path / "uploads")])

        assert code == 1
        assert json.loads(capsys.readouterr().out)["success"] is False

    def test_rejects_unknown_log_level(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--log-level", "LOUD", "cleanup"])

    def test_log_level_is_case_insensitive(self):
        args = build_parser().parse_args(["--log-level", "debug", "cleanup"])
        assert args.log_level == "DEBUG"

    def test_unknown_env_log_level_falls_back(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "chatty")
        args = build_parser().parse_args(["cleanup"])
        assert args.log_level == "INFO"
