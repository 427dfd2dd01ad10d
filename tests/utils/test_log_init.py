import logging

from hashiprov.logging.log import init_logging


def _cleanup(*names):
    for n in names:
        lg = logging.getLogger(n)
        for h in list(lg.handlers):
            h.close()
        lg.handlers.clear()
        lg.propagate = True
        lg.setLevel(logging.NOTSET)


def test_log_file_is_named_after_host_and_captures_debug(tmp_path):
    try:
        logger, run_id, log_path = init_logging(base_dir=tmp_path, name="hp-test", host="10.0.0.5:22")
        logger.debug("$ openssl genpkey")
        for h in logger.handlers:
            h.flush()

        assert log_path.parent == tmp_path
        assert log_path.name.startswith("hp-test-10.0.0.5_22-")
        assert log_path.name.endswith(f"-{run_id}.log")
        text = log_path.read_text()
        assert "$ openssl genpkey" in text
        assert run_id in text
    finally:
        _cleanup("hp-test", "paramiko", "urllib3")


def test_library_loggers_are_quieted(tmp_path):
    try:
        _, _, log_path = init_logging(base_dir=tmp_path, name="hp-test")
        logging.getLogger("paramiko.transport").info("kex negotiated")
        logging.getLogger("paramiko.transport").warning("host key changed")
        for h in logging.getLogger("paramiko").handlers:
            h.flush()

        text = log_path.read_text()
        assert "kex negotiated" not in text
        assert "host key changed" in text
    finally:
        _cleanup("hp-test", "paramiko", "urllib3")
