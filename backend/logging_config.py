import logging
import os
from typing import Optional

from config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE = "logs.log"
ERROR_FILE = "errors.log"

def log_path(name: str, data_dir: Optional[str] = None) -> str:
    return os.path.join(data_dir or settings.data_dir, name)

def setup_logging(data_dir: Optional[str] = None, level: Optional[str] = None):
    """Configure console logging plus the activity and error log files"""
    directory = data_dir or settings.data_dir
    os.makedirs(directory, exist_ok=True)

    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format=LOG_FORMAT
    )

    root = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)
    existing = {getattr(h, "baseFilename", None) for h in root.handlers}

    for name, handler_level in ((LOG_FILE, logging.INFO), (ERROR_FILE, logging.ERROR)):
        path = os.path.abspath(log_path(name, directory))
        if path in existing:
            continue
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setLevel(handler_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

def read_log_tail(name: str, last_size: Optional[int] = None, data_dir: Optional[str] = None) -> dict:
    """Return log content written after byte offset last_size"""
    path = log_path(name, data_dir)
    if not os.path.exists(path):
        return {"content": "", "size": 0}

    size = os.path.getsize(path)
    start = last_size if last_size is not None and 0 <= last_size <= size else 0
    with open(path, "rb") as f:
        f.seek(start)
        content = f.read().decode("utf-8", errors="replace")

    return {"content": content, "size": size}
