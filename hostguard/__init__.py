import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, scoped_session, sessionmaker


__version__ = '1.0.0'

# Catalog database
Base = declarative_base()
Session = scoped_session(sessionmaker(expire_on_commit=False))
engine = None

LOG_FILENAME = 'hostguard.log'


def configure_logging(log_dir: str, debug: bool = False, also_console: bool = True) -> str:
    """
    Configure process-wide logging.

    Writes to a rotating file under ``log_dir``. When that directory cannot be
    created (non-root invocations), falls back to the current working
    directory.

    Args:
        log_dir: Directory for the log file
        debug: Enable DEBUG level
        also_console: Also log to stderr

    Returns:
        Path of the log file actually in use
    """
    root_logger = logging.getLogger()

    # Avoid duplicate handlers if called more than once
    if getattr(root_logger, '_hostguard_log_path', None):
        return root_logger._hostguard_log_path

    log_level = logging.DEBUG if debug else logging.INFO
    root_logger.setLevel(log_level)

    try:
        os.makedirs(log_dir, exist_ok=True)
        log_path = os.path.join(log_dir, LOG_FILENAME)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
    except OSError:
        log_path = str(Path.cwd() / LOG_FILENAME)
        file_handler = RotatingFileHandler(log_path, maxBytes=10485760, backupCount=10)

    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    ))
    root_logger.addHandler(file_handler)

    if also_console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
        ))
        root_logger.addHandler(console_handler)

    root_logger._hostguard_log_path = log_path
    root_logger.info(f"Logging configured (level: {logging.getLevelName(log_level)}, file: {log_path})")
    return log_path


def init_db(database_url: str, echo: bool = False):
    """
    Bind the catalog session to ``database_url`` and bring the schema up to date.

    Args:
        database_url: SQLAlchemy URL, e.g. sqlite:////opt/server-setup/catalog.db
        echo: Log emitted SQL

    Returns:
        The SQLAlchemy engine
    """
    global engine

    if database_url.startswith('sqlite:///') and ':memory:' not in database_url:
        db_file = database_url.replace('sqlite:///', '', 1)
        db_dir = os.path.dirname(db_file)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    Session.remove()
    if engine is not None:
        engine.dispose()

    engine = create_engine(database_url, echo=echo)
    Session.configure(bind=engine)

    from hostguard import models  # noqa: F401  (register tables)
    from hostguard.migrations import init_database_schema
    init_database_schema(engine)

    return engine


def close_db():
    """Release the catalog session and engine."""
    global engine

    Session.remove()
    if engine is not None:
        engine.dispose()
        engine = None
