import sys

from loguru import logger

_FORMAT = (
    "<dim>{time:YYYY-MM-DD HH:mm:ss.SSS}</dim> | "
    "<level>{level: <8}</level> | "
    "<yellow>job={extra[job_id]}</yellow> | "
    "<blue>{name}</blue>:<magenta>{function}</magenta>:<cyan>{line}</cyan> - {message}"
)


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.configure(extra={"job_id": "-"})
    logger.add(sys.stderr, level=level.upper(), format=_FORMAT, enqueue=False, backtrace=False)
