"""Advisory warnings that are logged at most once per distinct message."""

import logging

_issued: set[str] = set()


def warn_once(logger: logging.Logger, message: str) -> bool:
    """Log a warning the first time a message is seen.

    Returns:
        True if the message was logged, False if it had already been issued.
    """
    if message in _issued:
        return False
    _issued.add(message)
    logger.warning(message)
    return True


def warn_always(logger: logging.Logger, message: str) -> None:
    logger.warning(message)


def reset_warnings() -> None:
    """Forget which messages have been issued."""
    _issued.clear()
