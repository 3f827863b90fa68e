"""Secret masking and log file handling."""

import logging
import sys

import pytest

import services.logger as log


@pytest.fixture(autouse=True)
def reset_secrets():
    yield
    log.register_sensitive(frozenset())
    log.close_file_logging()


def make_record(msg, *args, exc_info=None):
    return logging.LogRecord("linkpreview", logging.INFO, __file__, 1, msg, args, exc_info)


class TestMasking:

    def test_short_values_not_registered(self):
        log.register_sensitive(frozenset({"abc", "SESSDATA=abcdef"}))
        assert log.mask("abc SESSDATA=abcdef") == "abc ***"

    def test_filter_masks_formatted_message(self):
        log.register_sensitive(frozenset({"token-123456"}))
        record = make_record("connecting with %s", "token-123456")
        assert log.MaskingFilter().filter(record)
        assert record.getMessage() == "connecting with ***"

    def test_filter_masks_traceback(self):
        log.register_sensitive(frozenset({"cookie-secret"}))
        try:
            raise RuntimeError("bad cookie-secret")
        except RuntimeError:
            record = make_record("failed", exc_info=sys.exc_info())
        log.MaskingFilter().filter(record)
        assert "cookie-secret" not in record.exc_text
        assert "RuntimeError: bad ***" in record.exc_text

    def test_nothing_registered_leaves_record_alone(self):
        record = make_record("value %d", 5)
        log.MaskingFilter().filter(record)
        assert record.args == (5,)


class TestFileLogging:

    def test_writes_debug_lines(self, tmp_path):
        path = log.setup_file_logging(tmp_path)
        log.get_logger().debug("debug line for the file")
        log.close_file_logging()
        assert path.parent == tmp_path
        assert "debug line for the file" in path.read_text(encoding="utf-8")

    def test_old_files_pruned(self, tmp_path):
        for i in range(5):
            (tmp_path / f"20200101-00000{i}000.log").write_text("old")
        path = log.setup_file_logging(tmp_path, keep=3)
        remaining = sorted(p.name for p in tmp_path.glob("*.log"))
        assert len(remaining) == 3
        assert path.name in remaining
        assert "20200101-000000000.log" not in remaining

    def test_setup_twice_replaces_handler(self, tmp_path):
        log.setup_file_logging(tmp_path / "a")
        log.setup_file_logging(tmp_path / "b")
        file_handlers = [h for h in log.get_logger().handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
