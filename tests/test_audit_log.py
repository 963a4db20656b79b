import json
import logging
import uuid

from mcsupervisor.services import audit_log


def _file_logger(log_file):
    logger = logging.getLogger(f"test.audit.{uuid.uuid4()}")
    logger.setLevel(logging.INFO)
    logger.propagate = False
    handler = logging.FileHandler(log_file, encoding="utf-8")
    logger.addHandler(handler)
    return logger, handler


def test_audit_event_writes_one_json_line(tmp_path):
    log_file = tmp_path / "audit.log"
    logger, handler = _file_logger(log_file)

    try:
        audit_log.audit_event(
            logger=logger,
            actor="127.0.0.1",
            action="start",
            instance_id="survival",
            result="ok",
            extra={"pid": 4242},
        )
    finally:
        logger.removeHandler(handler)
        handler.close()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    payload = json.loads(lines[0])
    assert payload["action"] == "start"
    assert payload["instance"] == "survival"
    assert payload["pid"] == 4242


def test_audit_log_rotates_and_enforces_retention(monkeypatch, tmp_path):
    monkeypatch.setattr(audit_log, "AUDIT_ROTATE_MAX_BYTES", 150)
    monkeypatch.setattr(audit_log, "AUDIT_ROTATE_RETENTION", 2)

    log_file = tmp_path / "audit.log"
    logger, handler = _file_logger(log_file)

    try:
        for i in range(12):
            audit_log.audit_event(
                logger=logger,
                actor="tester",
                action="command",
                instance_id=f"instance-{i}",
                result="sent",
                extra={"command": "x" * 80},
            )
    finally:
        logger.removeHandler(handler)
        handler.close()

    assert log_file.exists()
    assert (tmp_path / "audit.log.1").exists()
    assert (tmp_path / "audit.log.2").exists()
    assert not (tmp_path / "audit.log.3").exists()


def test_rotated_generations_hold_whole_json_lines(monkeypatch, tmp_path):
    monkeypatch.setattr(audit_log, "AUDIT_ROTATE_MAX_BYTES", 200)
    monkeypatch.setattr(audit_log, "AUDIT_ROTATE_RETENTION", 1)

    log_file = tmp_path / "audit.log"
    logger, handler = _file_logger(log_file)

    try:
        for i in range(6):
            audit_log.audit_event(logger=logger, actor="tester", action="stop",
                                  instance_id=f"instance-{i}", result="ok", extra={"forced": False})
    finally:
        logger.removeHandler(handler)
        handler.close()

    assert not (tmp_path / "audit.log.2").exists()
    for path in (log_file, tmp_path / "audit.log.1"):
        lines = path.read_text(encoding="utf-8").splitlines()
        assert lines
        assert all(json.loads(line)["action"] == "stop" for line in lines)
    newest = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert newest["instance"] == "instance-5"


def test_rotation_disabled_keeps_single_file(monkeypatch, tmp_path):
    monkeypatch.setattr(audit_log, "AUDIT_ROTATE_MAX_BYTES", 0)

    log_file = tmp_path / "audit.log"
    logger, handler = _file_logger(log_file)

    try:
        for i in range(5):
            audit_log.audit_event(logger=logger, actor="tester", action="command",
                                  instance_id="survival", extra={"command": "x" * 100})
    finally:
        logger.removeHandler(handler)
        handler.close()

    assert len(log_file.read_text(encoding="utf-8").splitlines()) == 5
    assert not (tmp_path / "audit.log.1").exists()
