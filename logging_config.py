"""
Logging configuration for the face unlock service
"""

import logging
import logging.handlers
from datetime import datetime
from pathlib import Path

AUDIT_LOGGER_NAME = 'audit'


def setup_logging(app, log_level='INFO', log_dir='logs', max_log_size=10*1024*1024, backup_count=5):
    """
    Set up logging for the Flask application

    Args:
        app: Flask app instance
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory receiving the rotating log files
        max_log_size: Maximum size of one log file (bytes)
        backup_count: Number of rotated files kept
    """

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    level = getattr(logging, str(log_level).upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(lineno)d - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    file_handler = logging.handlers.RotatingFileHandler(
        log_dir / 'unlock_system.log',
        maxBytes=max_log_size,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)

    error_handler = logging.handlers.RotatingFileHandler(
        log_dir / 'errors.log',
        maxBytes=max_log_size,
        backupCount=backup_count,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    audit_handler = logging.handlers.RotatingFileHandler(
        log_dir / 'audit.log',
        maxBytes=max_log_size,
        backupCount=backup_count,
        encoding='utf-8'
    )
    audit_handler.setLevel(logging.INFO)
    audit_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Replace handlers from a previous setup (app factory may run more than once)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(error_handler)

    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    for handler in audit_logger.handlers[:]:
        audit_logger.removeHandler(handler)
        handler.close()
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)

    logging.getLogger('unlock_core').setLevel(level)

    app.logger.setLevel(level)

    app.logger.info("=" * 50)
    app.logger.info("FACE UNLOCK SERVICE STARTUP")
    app.logger.info(f"Timestamp: {datetime.now().isoformat()}")
    app.logger.info(f"Log Level: {logging.getLevelName(level)}")
    app.logger.info(f"Log Directory: {log_dir.absolute()}")
    app.logger.info("=" * 50)


class UnlockAuditLogger:
    """Audit trail of face unlock attempts"""

    LOGIN_METHOD = 'face'

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(AUDIT_LOGGER_NAME)

    def log_unlock_started(self, identity, device_id, ip_address=None):
        ip_info = f", IP: {ip_address}" if ip_address else ""
        self.logger.info(
            f"UNLOCK STARTED - User: {identity}, Device: {device_id}, "
            f"Method: {self.LOGIN_METHOD}{ip_info}"
        )

    def log_unlock_finished(self, identity, device_id, outcome, attempts, confidence=None):
        """Log the single terminal outcome of a session"""
        confidence_info = f", Confidence: {confidence:.3f}" if confidence is not None else ""
        message = (
            f"UNLOCK {str(outcome).upper()} - User: {identity}, Device: {device_id}, "
            f"Method: {self.LOGIN_METHOD}, Attempts: {attempts}{confidence_info}"
        )
        if outcome == 'verified':
            self.logger.info(message)
        else:
            self.logger.warning(message)

    def log_capture_refused(self, identity, device_id, reason):
        self.logger.info(
            f"CAPTURE REFUSED - User: {identity}, Device: {device_id}, Reason: {reason}"
        )


def get_client_ip(request):
    """Client IP address, honouring reverse proxy headers"""
    if request.headers.get('X-Forwarded-For'):
        return request.headers.get('X-Forwarded-For').split(',')[0].strip()
    elif request.headers.get('X-Real-IP'):
        return request.headers.get('X-Real-IP')
    else:
        return request.remote_addr
