"""Tests for logging setup."""

import logging
import threading

from seqbatch.logging_setup import study_error_log

logger = logging.getLogger("seqbatch.test")


class TestStudyErrorLog:
    """Tests for the per-study error log."""

    def test_warnings_only(self, tmp_path):
        """INFO is left out, WARNING and above are kept."""
        path = tmp_path / "GSE1" / "quant_error_log.txt"
        logger.setLevel(logging.DEBUG)

        with study_error_log(path, thread_scoped=False):
            logger.info("routine progress")
            logger.warning("[S1] tier1 failed")
            logger.error("study aborted")

        text = path.read_text()
        assert "routine progress" not in text
        assert "WARNING [S1] tier1 failed" in text
        assert "ERROR study aborted" in text

    def test_handler_removed_after_block(self, tmp_path):
        """Nothing is written once the block exits."""
        path = tmp_path / "err.txt"

        with study_error_log(path, thread_scoped=False):
            pass
        logger.warning("after")

        assert "after" not in path.read_text()

    def test_thread_scoped(self, tmp_path):
        """Other threads' records stay out of a scoped log."""
        path = tmp_path / "err.txt"

        with study_error_log(path, thread_scoped=True):
            other = threading.Thread(target=lambda: logger.warning("from another study"))
            other.start()
            other.join()
            logger.warning("from this study")

        text = path.read_text()
        assert "from this study" in text
        assert "from another study" not in text

    def test_named_workers_included(self, tmp_path):
        """Workers named after the owning thread write to its log."""
        path = tmp_path / "err.txt"
        owner = threading.current_thread().name

        with study_error_log(path, thread_scoped=True):
            worker = threading.Thread(
                target=lambda: logger.warning("[S1] Missing R2, run excluded"),
                name=f"{owner}/quant_0",
            )
            worker.start()
            worker.join()
            stranger = threading.Thread(
                target=lambda: logger.warning("[S9] other pool"),
                name=f"{owner}x/quant_0",
            )
            stranger.start()
            stranger.join()

        text = path.read_text()
        assert "[S1] Missing R2, run excluded" in text
        assert "[S9] other pool" not in text
