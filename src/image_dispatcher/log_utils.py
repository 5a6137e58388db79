import inspect
import logging


class ClassNameFilter(logging.Filter):
    """
    Adds a `class_name` attribute to the LogRecord by looking up `self` or
    `cls` in the calling frame at logging time.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.class_name = "<no-class>"

        frame = inspect.currentframe()
        # walk up to the frame of the function that emitted the record
        while frame:
            code = frame.f_code
            if code.co_name == record.funcName:
                local_self = frame.f_locals.get("self")
                if local_self is not None:
                    record.class_name = type(local_self).__name__
                    break

                local_cls = frame.f_locals.get("cls")
                if isinstance(local_cls, type):
                    record.class_name = local_cls.__name__
                    break

            frame = frame.f_back

        return True


class CallerFormatter(logging.Formatter):
    """
    Formatter showing:
    - level
    - time
    - file and line number
    - class and function
    - message
    """

    default_format = (
        "[%(levelname)s] %(asctime)s "
        "%(filename)s:%(lineno)d "
        "%(class_name)s.%(funcName)s : "
        "%(message)s"
    )

    def __init__(self, fmt: str | None = None, datefmt: str | None = None):
        if fmt is None:
            fmt = self.default_format
        super().__init__(fmt=fmt, datefmt=datefmt, style='%')


_HANDLER_NAME = "image-dispatcher-console"


def init_logging(level: str | int = "INFO") -> None:
    """Initialize logging for the CLI and the API server.

    Calling it twice only updates the level.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers:
        if handler.get_name() == _HANDLER_NAME:
            handler.setLevel(level)
            return

    console_handler = logging.StreamHandler()
    console_handler.set_name(_HANDLER_NAME)
    console_handler.setLevel(level)
    console_handler.addFilter(ClassNameFilter())
    console_handler.setFormatter(CallerFormatter())
    root_logger.addHandler(console_handler)
    # keep request-level chatter out of dispatch logs
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
