import logging
import sys
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

# third-party loggers that flood the console while models load
logging.getLogger('urllib3').setLevel(logging.WARNING)
logging.getLogger('filelock').setLevel(logging.WARNING)
logging.getLogger('PIL').setLevel(logging.WARNING)
logging.getLogger('multipart').setLevel(logging.WARNING)


_SESSION_LOG_LOCK = threading.Lock()
_SESSION_LOG_FILE: Optional[Path] = None


def hex_to_ansi(hex_color):
    hex_color = hex_color.lstrip('#')
    rgb = tuple(int(hex_color[i:i+2], 16) for i in (0, 2, 4))
    r, g, b = [int((x / 255.0) * 5) for x in rgb]
    ansi_color = 16 + (r * 36) + (g * 6) + b
    return f'\033[38;5;{ansi_color}m'


class ColoredFormatter(logging.Formatter):

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=True):
        super().__init__(fmt=fmt, datefmt=datefmt, style=style)

        self.COLORS = {
            'session': hex_to_ansi('#5c9edc'),  # blue
            'worker': hex_to_ansi('#5cd97c'),  # green
            'inference': hex_to_ansi('#ff0055'),  # pink
            'embedding': hex_to_ansi('#ff7f0e'),  # orange
            'app': hex_to_ansi('#fff44f'),  # yellow
            'ENDC': '\033[0m'
        }
        self.use_color = use_color
        self.last_module = None
        self.last_funcName = None

    def format(self, record):
        module_name = os.path.splitext(os.path.basename(record.pathname))[0]
        immediate_directory = os.path.basename(os.path.dirname(record.pathname))
        module_name_full = os.path.join(immediate_directory, module_name) + '.py'
        func_name = record.funcName

        asctime = datetime.now().strftime('%Y-%m-%d %H:%M:%S,%f')[:-3]

        mwidth = 30
        if len(module_name_full) > mwidth:
            module_name_full = module_name_full[:mwidth // 2 - 2] + '...' + module_name_full[-mwidth // 2 + 1:]

        fwidth = 12
        if len(func_name) > fwidth:
            func_name = func_name[:fwidth // 2 - 2] + '...' + func_name[-fwidth // 2 + 1:]

        # Only print the module and function names when they change
        if module_name != self.last_module:
            self.last_module = module_name
            prefix_module = f'{module_name_full:<{mwidth}}'
        else:
            prefix_module = ' ' * mwidth

        if func_name != self.last_funcName:
            self.last_funcName = func_name
            prefix_func = f'{func_name:.<{fwidth}}()'
        else:
            prefix_func = ' ' * (fwidth + 2)

        line_info = f'\t line {record.lineno:>3}'
        level_name_padded = f'[{record.levelname}]'.ljust(11)

        message = record.getMessage()
        if record.exc_info:
            message = message + '\n' + self.formatException(record.exc_info)

        text = (
            asctime + '\t' +
            level_name_padded +
            prefix_module + prefix_func + line_info + '\t' +
            message
        )
        if not self.use_color:
            return text
        ansi_color = self.COLORS.get(module_name, '\033[90m')  # gray if not listed above
        return ansi_color + text + self.COLORS['ENDC']


def setup_logger(name=__name__, level=None):
    """Install the colored console handler on the root logger once and return ``name``'s logger."""
    root_logger = logging.getLogger()
    if level is not None:
        root_logger.setLevel(level)
    elif root_logger.level == logging.NOTSET or root_logger.level == logging.WARNING:
        root_logger.setLevel(logging.INFO)

    if not any(getattr(handler, '_pointseg', False) for handler in root_logger.handlers):
        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(ColoredFormatter(use_color=sys.stdout.isatty()))
        ch._pointseg = True
        root_logger.addHandler(ch)

    return logging.getLogger(name)


def configure_session_log(path: Optional[Path]) -> None:
    """Point :func:`append_session_log` at ``path``; ``None`` disables the file log."""
    global _SESSION_LOG_FILE
    with _SESSION_LOG_LOCK:
        _SESSION_LOG_FILE = Path(path).expanduser() if path is not None else None


def append_session_log(message: str) -> None:
    """Append a timestamped line to the session log file."""
    with _SESSION_LOG_LOCK:
        path = _SESSION_LOG_FILE
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
            with path.open("a", encoding="utf-8", errors="ignore") as handle:
                handle.write(f"[{timestamp}] {message}\n")
        except OSError:
            pass
