"""Tests for common.run_logger."""

from __future__ import annotations

import json
import logging

from wholesome_library.common import RunLogger, configure_logging, generate_run_id
from wholesome_library.common.run_logger import JsonFormatter


class TestGenerateRunId:
    def test_format_and_uniqueness(self):
        ids = {generate_run_id() for _ in range(20)}
        assert len(ids) == 20
        assert all(run_id.startswith("run_") for run_id in ids)


class TestRunLogger:
    def test_entries_are_bound_to_the_run(self):
        log = RunLogger("run_abc")
        log.info("generation", "Draft ready", words=1200)
        log.transition("generating", "checking_safety")

        entries = log.entries
        assert [entry.run_id for entry in entries] == ["run_abc", "run_abc"]
        assert entries[0].data == {"words": 1200}
        assert entries[1].message == "generating -> checking_safety"

    def test_forwards_run_id_to_standard_logging(self, caplog):
        log = RunLogger("run_xyz")
        with caplog.at_level(logging.INFO, logger="wholesome_library.run"):
            log.warning("illustration", "Using fallback", genre="mystery")

        record = caplog.records[-1]
        assert record.run_id == "run_xyz"
        assert record.stage == "illustration"
        assert record.data == {"genre": "mystery"}

    def test_writes_json_lines_file(self, tmp_path):
        log = RunLogger("run_file", log_dir=tmp_path)
        log.info("queue", "Claimed brief", brief_id="b1")
        log.error("safety", "Rejected")

        lines = log.log_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["run_id"] == "run_file"
        assert first["data"] == {"brief_id": "b1"}

    def test_in_memory_artifact_reference(self):
        log = RunLogger("run_mem")
        ref = log.record_artifact("values", {"score": 4.2})
        assert ref == "run://run_mem/values"
        assert log.artifact(ref) == {"score": 4.2}

    def test_artifact_directory(self, tmp_path):
        log = RunLogger("run_dir", artifact_dir=tmp_path)
        ref = log.record_artifact("generation", {"title": "Milo"})
        assert ref.endswith("generation.json")
        assert json.loads((tmp_path / "run_dir" / "generation.json").read_text(encoding="utf-8")) == {"title": "Milo"}


class TestFormatters:
    def test_json_formatter_includes_run_fields(self):
        record = logging.LogRecord("wholesome_library.run", logging.INFO, __file__, 1, "hello", None, None)
        record.run_id = "run_1"
        record.stage = "quality"
        payload = json.loads(JsonFormatter().format(record))
        assert payload["run_id"] == "run_1"
        assert payload["stage"] == "quality"
        assert payload["message"] == "hello"

    def test_configure_logging_installs_single_handler(self):
        package_logger = configure_logging("DEBUG", "json")
        configure_logging("DEBUG", "json")
        assert len(package_logger.handlers) == 1
        assert isinstance(package_logger.handlers[0].formatter, JsonFormatter)
        assert package_logger.level == logging.DEBUG
