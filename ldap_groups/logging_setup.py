"""
Logging setup and configuration for LDAP Groups Sync.

This module configures the root logger with a rotating log file, optional
console output and scrubbing of credentials, and provides an audit logger
that records every local group change.
"""

import os
import sys
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

LOG_FILE_NAME = 'ldap-groups.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""
    
    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'pass', 'pwd', 'secret', 'token', 'credential'
    ]
    
    PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value and key: value
        PATTERNS.append((re.compile(rf'(\b{_keyword}\s*[=:]\s*)(?!\s)[^\s,}}\]"\']+', re.IGNORECASE), r'\1****'))
        # "key": "value" in JSON or repr output
        PATTERNS.append((re.compile(rf'([\'"]{_keyword}[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE), r'\1****\2'))
    del _keyword
    
    def filter(self, record):
        """Scrub credentials from the record's message."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            for pattern, replacement in self.PATTERNS:
                msg = pattern.sub(replacement, msg)
            record.msg = msg
        return True


FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
FILE_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
CONSOLE_DATE_FORMAT = '%H:%M:%S'


def _level(name: Optional[str], default: int) -> int:
    if not name:
        return default
    return getattr(logging, str(name).upper(), default)


class LoggingManager:
    """
    Configures the root logger once per process.
    
    Log records go to a file in log_dir (rotated at midnight unless rotation
    is 'none') and, unless disabled, to the console. Every handler scrubs
    credentials. Rotated files older than retention_days are deleted.
    """
    
    ROTATING = ('daily', 'midnight')
    
    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7
    
    def setup_logging(self, config: Dict[str, Any]) -> None:
        if self.configured:
            return
        
        config = config or {}
        level = _level(config.get('level'), logging.INFO)
        console_enabled = config.get('console_output', True)
        self.log_dir = self._usable_log_dir(config.get('log_dir', 'logs'))
        self.retention_days = config.get('retention_days', 7)
        
        handlers = [self._file_handler(config.get('rotation', 'daily'), level)]
        if console_enabled:
            handlers.append(self._console_handler(_level(config.get('console_level'), logging.WARNING)))
        
        scrubber = SensitiveDataFilter()
        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        root_logger.setLevel(level)
        for handler in handlers:
            handler.addFilter(scrubber)
            root_logger.addHandler(handler)
        
        self._cleanup_old_logs()
        self.configured = True
        logging.getLogger(__name__).info(
            f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at {logging.getLevelName(level)} "
            f"(retention {self.retention_days} days, console {'on' if console_enabled else 'off'})")
    
    @staticmethod
    def _usable_log_dir(log_dir: Optional[str]) -> str:
        """Create log_dir if needed; use the working directory when that fails."""
        if not log_dir:
            return '.'
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            print(f"Warning: cannot create log directory {log_dir} ({e}), logging to current directory",
                  file=sys.stderr)
            return '.'
        return log_dir
    
    def _file_handler(self, rotation: str, level: int) -> logging.Handler:
        path = os.path.join(self.log_dir, LOG_FILE_NAME)
        if str(rotation).lower() in self.ROTATING:
            handler = logging.handlers.TimedRotatingFileHandler(
                path, when='midnight', backupCount=self.retention_days, encoding='utf-8')
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(path, encoding='utf-8')
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATE_FORMAT))
        return handler
    
    @staticmethod
    def _console_handler(level: int) -> logging.Handler:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATE_FORMAT))
        return handler
    
    def _cleanup_old_logs(self) -> None:
        """Delete rotated log files last modified before the retention window."""
        if self.retention_days <= 0:
            return
        
        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        current = os.path.join(self.log_dir, LOG_FILE_NAME)
        for log_file in self.get_log_files():
            if log_file == current:
                continue
            try:
                if os.path.getmtime(log_file) < cutoff:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: cannot remove old log file {log_file}: {e}", file=sys.stderr)
    
    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '*')))


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.
    
    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Logger for group changes and directory binds."""
    
    def __init__(self):
        self.logger = logging.getLogger('audit')
    
    def log_bind_attempt(self, server: str, bind_user: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"LDAP bind {status}: server={server} user={bind_user}")
    
    def log_group_change(self, action: str, account: str, group: str, dry_run: bool = False):
        prefix = "[dry-run] " if dry_run else ""
        self.logger.info(f"{prefix}Group {action}: account={account} group={group}")
    
    def log_sync_failure(self, account: str, reason: str):
        self.logger.warning(f"Group sync FAILURE: account={account} - {reason}")


# Global audit logger instance
audit_logger = AuditLogger()
