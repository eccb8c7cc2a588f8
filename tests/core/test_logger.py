import logging

from loguru import logger

from runfeed.core.logger import setup_logger


def test_file_sink_receives_context(tmp_path):
    log_file = tmp_path / "logs" / "runfeed.log"

    setup_logger(level="INFO", log_file=str(log_file))
    logger.info("[FEED] Processed primary records", accepted=3)
    logger.complete()

    content = log_file.read_text()
    assert "[FEED] Processed primary records" in content
    assert "'accepted': 3" in content


def test_noisy_libraries_are_quieted_unless_debugging():
    setup_logger(level="INFO")
    assert logging.getLogger("websockets").level == logging.WARNING

    logging.getLogger("websockets").setLevel(logging.NOTSET)
    setup_logger(level="DEBUG")
    assert logging.getLogger("websockets").level == logging.NOTSET
