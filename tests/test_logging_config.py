"""Tests for logging setup and the unlock audit trail."""

import logging

from flask import Flask

from logging_config import UnlockAuditLogger, setup_logging


def test_setup_logging_creates_rotating_files(tmp_path, reset_root_logging):
    app = Flask(__name__)
    log_dir = tmp_path / "logs"

    setup_logging(app, log_level="DEBUG", log_dir=log_dir)
    logging.getLogger("unlock_core.test").error("camera exploded")
    UnlockAuditLogger().log_unlock_finished("alice", "dev-1", "verified", 1, confidence=0.91)
    for handler in logging.getLogger().handlers + logging.getLogger("audit").handlers:
        handler.flush()

    assert "camera exploded" in (log_dir / "errors.log").read_text(encoding="utf-8")
    assert "FACE UNLOCK SERVICE STARTUP" in (log_dir / "unlock_system.log").read_text(encoding="utf-8")
    audit = (log_dir / "audit.log").read_text(encoding="utf-8")
    assert "UNLOCK VERIFIED - User: alice, Device: dev-1, Method: face, Attempts: 1" in audit
    assert "Confidence: 0.910" in audit


def test_audit_logger_levels():
    records = []

    class Collect(logging.Handler):
        def emit(self, record):
            records.append(record)

    logger = logging.getLogger("audit.test")
    logger.addHandler(Collect())
    logger.setLevel(logging.INFO)
    audit = UnlockAuditLogger(logger)

    audit.log_unlock_started("alice", "dev-1", ip_address="10.0.0.5")
    audit.log_unlock_finished("alice", "dev-1", "rejected", 2)
    audit.log_capture_refused("alice", "dev-1", "not ready")

    assert [r.levelno for r in records] == [logging.INFO, logging.WARNING, logging.INFO]
    assert "IP: 10.0.0.5" in records[0].getMessage()
    assert "Reason: not ready" in records[2].getMessage()
