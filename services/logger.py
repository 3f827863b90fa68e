import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import services.util as u

# ANSI 颜色码
COLORS = {
    'DBG': '\033[36m',   # 青蓝
    'INF': '\033[32m',   # 绿色
    'WRN': '\033[33m',   # 黄色
    'ERR': '\033[31m',   # 红色
    'CRT': '\033[91m\033[1m',  # 亮红加粗
    'RST': '\033[0m'
}

# 是否为终端
IS_TTY = sys.stdout.isatty()

# 保留最近的日志文件数量
DEFAULT_KEEP_LOGS = 10

# Secrets (ws token, bili cookie) to redact from every record, including
# tracebacks. Populated by register_sensitive() once the config is loaded.
_sensitive: set[str] = set()


def register_sensitive(values: frozenset[str]) -> None:
    """Register secret strings that must never appear in log output."""
    _sensitive.clear()
    # Skip values shorter than 8 chars to avoid masking common substrings
    _sensitive.update(v for v in values if len(v) >= 8)


def mask(text: str) -> str:
    for secret in _sensitive:
        if secret in text:
            text = text.replace(secret, "***")
    return text


class MaskingFilter(logging.Filter):
    """Redacts registered secrets from the message and any attached traceback."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not _sensitive:
            return True
        record.msg = mask(record.getMessage())
        record.args = ()
        if record.exc_info and not record.exc_text:
            record.exc_text = logging.Formatter().formatException(record.exc_info)
        if record.exc_text:
            record.exc_text = mask(record.exc_text)
        return True


class ConsoleFormatter(logging.Formatter):
    tags = {
        'DEBUG': '[DBG]',
        'INFO': '[INF]',
        'WARNING': '[WRN]',
        'ERROR': '[ERR]',
        'CRITICAL': '[CRT]'
    }

    def format(self, record):
        timestamp = datetime.now().strftime('[%Y-%m-%d %H:%M:%S]')
        level = self.tags.get(record.levelname, f'[{record.levelname}]')
        if IS_TTY and level[1:4] in COLORS:
            level = COLORS[level[1:4]] + level + COLORS['RST']

        try:
            file = os.path.relpath(record.pathname)
        except ValueError:
            file = record.pathname

        line = f"{timestamp} {level} | {file}:{record.lineno} | {record.getMessage()}"
        if record.exc_text:
            line = f"{line}\n{record.exc_text}"
        return line


def _console_level() -> int:
    name = (u.get_env('LINKPREVIEW_LOG_LEVEL') or 'INFO').strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


# 创建主 logger
logger = logging.getLogger('linkpreview')
logger.setLevel(logging.DEBUG)
logger.addFilter(MaskingFilter())

# 清除已有 handlers 防止重复
if logger.handlers:
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
logger.propagate = False

# 控制台默认只输出 INFO 及以上（LINKPREVIEW_LOG_LEVEL 可覆盖）
console_handler = logging.StreamHandler(sys.stdout)
console_handler.setFormatter(ConsoleFormatter())
console_handler.setLevel(_console_level())
logger.addHandler(console_handler)

# 文件 handler 由 setup_file_logging() 在进程启动时添加
_file_handler: logging.FileHandler | None = None


def _prune_logs(directory: Path, keep: int) -> None:
    files = sorted(directory.glob("*.log"), key=lambda p: p.name, reverse=True)
    for old in files[keep:]:
        try:
            old.unlink()
        except OSError as e:
            logger.debug(f"Could not remove old log file {old}: {e}")


def setup_file_logging(log_dir: str | os.PathLike | None = None, keep: int = DEFAULT_KEEP_LOGS) -> Path:
    """Attach a DEBUG file handler writing to ``<log_dir>/<timestamp>.log``.

    *log_dir* defaults to ``$LINKPREVIEW_LOG_DIR`` or ``logs``. Only the
    newest *keep* log files are kept. Calling it again replaces the handler.
    """
    global _file_handler
    directory = Path(log_dir or u.get_env('LINKPREVIEW_LOG_DIR') or "logs")
    directory.mkdir(parents=True, exist_ok=True)

    # 生成日志文件名：20250915-150316160.log（毫秒精度）
    path = directory / (datetime.now().strftime("%Y%m%d-%H%M%S%f")[:-3] + ".log")

    close_file_logging()
    handler = logging.FileHandler(path, encoding='utf-8')
    handler.setFormatter(logging.Formatter(
        '[%(asctime)s] [%(levelname)s] | %(filename)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    handler.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    _file_handler = handler

    _prune_logs(directory, keep)
    return path


def close_file_logging() -> None:
    global _file_handler
    if _file_handler is not None:
        logger.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None


def get_logger(name=None):
    """返回已配置的日志器（当前共享同一实例）"""
    return logger


def format_error(error: BaseException) -> str:
    """One-line description of *error* for warning logs."""
    text = str(error)
    return text or error.__class__.__name__
